"""Admin profile management."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memories import models
from memories.auth import Authorizer, Capability
from memories.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def parse_role(role: str | None) -> models.AdminRole:
    try:
        return models.AdminRole(role)
    except ValueError as e:
        raise ValidationError(
            "Invalid role. Must be admin, super_admin, or reviewer",
            details={"allowed": [r.value for r in models.AdminRole]},
        ) from e


class AdminRegistry:
    """Create, list, re-role and remove administrator profiles."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        authorizer: Authorizer,
    ) -> None:
        self.session_maker = session_maker
        self.authorizer = authorizer

    async def list_admins(self, actor: str | None) -> list[models.AdminProfile]:
        await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)
        async with self.session_maker() as session:
            result = await session.execute(
                select(models.AdminProfile).order_by(models.AdminProfile.created_at.desc())
            )
            return list(result.scalars().all())

    async def create_admin(
        self,
        actor: str | None,
        admin_id: str,
        email: str,
        role: str = models.AdminRole.ADMIN.value,
    ) -> models.AdminProfile:
        """Register a new administrator.

        The identity itself is provisioned by the identity provider; this
        only records the profile and role.

        Raises:
            AuthorizationError: If the caller cannot create admins, or grants super_admin without being one
            ValidationError: If the role is unknown or fields are blank
            ConflictError: If the id or email is already registered
        """
        creator = await self.authorizer.require(actor, Capability.CREATE_ADMINS)
        new_role = parse_role(role)
        if not admin_id or not email:
            raise ValidationError("id and email are required")
        if new_role == models.AdminRole.SUPER_ADMIN and creator.role != models.AdminRole.SUPER_ADMIN.value:
            raise AuthorizationError("Only super admins can create super admins")

        profile = models.AdminProfile(
            id=admin_id,
            email=email.strip().lower(),
            role=new_role.value,
            first_login=True,
            created_by=creator.id,
        )
        async with self.session_maker() as session:
            existing = await session.execute(
                select(models.AdminProfile.id).where(
                    (models.AdminProfile.id == admin_id) | (models.AdminProfile.email == profile.email)
                )
            )
            if existing.first() is not None:
                raise ConflictError(f"Admin {admin_id} or email {profile.email} already exists")
            session.add(profile)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(f"Admin {admin_id} or email {profile.email} already exists") from e

        logger.info(f"Admin {creator.id} created {new_role.value} {admin_id}")
        return profile

    async def update_role(self, actor: str | None, target_id: str, role: str) -> models.AdminProfile:
        """Change another admin's role.

        Raises:
            AuthorizationError: If the caller is not a super admin
            ValidationError: If the role is unknown or the caller targets themselves
            NotFoundError: If the target does not exist
        """
        caller = await self.authorizer.require(actor, Capability.MANAGE_ADMINS)
        new_role = parse_role(role)
        if target_id == caller.id:
            raise ValidationError("Cannot change your own role")

        async with self.session_maker() as session:
            profile = await session.get(models.AdminProfile, target_id)
            if profile is None:
                raise NotFoundError(f"Admin {target_id} not found")
            profile.role = new_role.value
            await session.commit()

        logger.info(f"Admin {caller.id} set role of {target_id} to {new_role.value}")
        return profile

    async def delete_admin(self, actor: str | None, target_id: str) -> None:
        caller = await self.authorizer.require(actor, Capability.MANAGE_ADMINS)
        if target_id == caller.id:
            raise ValidationError("Cannot delete your own account")

        async with self.session_maker() as session:
            profile = await session.get(models.AdminProfile, target_id)
            if profile is None:
                raise NotFoundError(f"Admin {target_id} not found")
            await session.delete(profile)
            await session.commit()

        logger.info(f"Admin {caller.id} deleted admin {target_id}")

    async def complete_first_login(self, actor: str | None) -> models.AdminProfile:
        """Clear the first-login flag for the caller."""
        caller = await self.authorizer.require(actor, Capability.VIEW_SUBMISSIONS)
        async with self.session_maker() as session:
            profile = await session.get(models.AdminProfile, caller.id)
            if profile is None:
                raise NotFoundError(f"Admin {caller.id} not found")
            profile.first_login = False
            await session.commit()
        return profile
