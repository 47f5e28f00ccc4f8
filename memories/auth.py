"""Authorization port for administrator actions.

Identity is asserted upstream by the identity provider; this module only
answers "does this identity hold a role granting capability X".
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .errors import AuthorizationError

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Actions gated by admin role."""
    VIEW_SUBMISSIONS = "view_submissions"
    MUTATE_SUBMISSIONS = "mutate_submissions"
    DELETE_SUBMISSIONS = "delete_submissions"
    CREATE_ADMINS = "create_admins"
    MANAGE_ADMINS = "manage_admins"


ROLE_CAPABILITIES: dict[models.AdminRole, frozenset[Capability]] = {
    models.AdminRole.REVIEWER: frozenset({Capability.VIEW_SUBMISSIONS}),
    models.AdminRole.ADMIN: frozenset({
        Capability.VIEW_SUBMISSIONS,
        Capability.MUTATE_SUBMISSIONS,
        Capability.DELETE_SUBMISSIONS,
        Capability.CREATE_ADMINS,
    }),
    models.AdminRole.SUPER_ADMIN: frozenset(Capability),
}


def role_allows(role: str | models.AdminRole, capability: Capability) -> bool:
    try:
        role = models.AdminRole(role)
    except ValueError:
        return False
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


class AdminDirectory(ABC):
    """Lookup of admin profiles by identity."""

    @abstractmethod
    async def get_profile(self, identity: str) -> models.AdminProfile | None:
        ...


class DatabaseAdminDirectory(AdminDirectory):
    """Admin profiles read from the ``admin_profiles`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def get_profile(self, identity: str) -> models.AdminProfile | None:
        async with self.session_maker() as session:
            return await session.get(models.AdminProfile, identity)


class Authorizer:
    """Checks capabilities against the admin directory."""

    def __init__(self, directory: AdminDirectory) -> None:
        self.directory = directory

    async def require(self, identity: str | None, capability: Capability) -> models.AdminProfile:
        """Return the caller's profile if it grants ``capability``.

        Raises:
            AuthorizationError: If the identity is unknown or lacks the capability
        """
        if not identity:
            raise AuthorizationError("Missing admin identity")

        profile = await self.directory.get_profile(identity)
        if profile is None:
            logger.warning(f"Rejected unknown identity {identity} for {capability.value}")
            raise AuthorizationError("Unauthorized: Admin access required")

        if not role_allows(profile.role, capability):
            logger.warning(f"Admin {identity} ({profile.role}) lacks {capability.value}")
            raise AuthorizationError(
                f"Unauthorized: role {profile.role} cannot {capability.value.replace('_', ' ')}",
            )
        return profile
