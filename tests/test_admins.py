"""Tests for admin profile management and role capabilities."""

import pytest

from conftest import ADMIN, REVIEWER, SUPER_ADMIN
from memories import models
from memories.auth import Capability, role_allows
from memories.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from memories.pipelines.admins import AdminRegistry


@pytest.fixture
def registry(session_maker, authorizer, admins):
    return AdminRegistry(session_maker, authorizer)


@pytest.mark.parametrize("role,capability,allowed", [
    ("reviewer", Capability.VIEW_SUBMISSIONS, True),
    ("reviewer", Capability.MUTATE_SUBMISSIONS, False),
    ("reviewer", Capability.DELETE_SUBMISSIONS, False),
    ("admin", Capability.DELETE_SUBMISSIONS, True),
    ("admin", Capability.CREATE_ADMINS, True),
    ("admin", Capability.MANAGE_ADMINS, False),
    ("super_admin", Capability.MANAGE_ADMINS, True),
    ("owner", Capability.VIEW_SUBMISSIONS, False),
])
def test_role_capabilities(role, capability, allowed):
    assert role_allows(role, capability) is allowed


@pytest.mark.anyio
class TestCreateAdmin:
    """Registering new administrators."""

    async def test_defaults(self, registry):
        profile = await registry.create_admin(ADMIN, "new-1", "New.Admin@SJCBA.edu.in")

        assert profile.role == "admin"
        assert profile.first_login is True
        assert profile.created_by == ADMIN
        assert profile.email == "new.admin@sjcba.edu.in"

    async def test_only_super_admin_grants_super_admin(self, registry):
        with pytest.raises(AuthorizationError):
            await registry.create_admin(ADMIN, "new-1", "new@sjcba.edu.in", "super_admin")

        profile = await registry.create_admin(SUPER_ADMIN, "new-2", "new2@sjcba.edu.in", "super_admin")
        assert profile.role == "super_admin"

    async def test_reviewer_cannot_create(self, registry):
        with pytest.raises(AuthorizationError):
            await registry.create_admin(REVIEWER, "new-1", "new@sjcba.edu.in")

    async def test_invalid_role(self, registry):
        with pytest.raises(ValidationError):
            await registry.create_admin(SUPER_ADMIN, "new-1", "new@sjcba.edu.in", "owner")

    async def test_duplicate_email(self, registry):
        with pytest.raises(ConflictError):
            await registry.create_admin(SUPER_ADMIN, "new-1", f"{ADMIN}@sjcba.edu.in")

    async def test_duplicate_id(self, registry):
        with pytest.raises(ConflictError):
            await registry.create_admin(SUPER_ADMIN, ADMIN, "other@sjcba.edu.in")

    async def test_listed(self, registry):
        await registry.create_admin(ADMIN, "new-1", "new@sjcba.edu.in", "reviewer")
        ids = {p.id for p in await registry.list_admins(REVIEWER)}
        assert ids == {SUPER_ADMIN, ADMIN, REVIEWER, "new-1"}


@pytest.mark.anyio
class TestManageAdmins:
    """Role changes and removal (super admins only)."""

    async def test_update_role(self, registry):
        profile = await registry.update_role(SUPER_ADMIN, REVIEWER, "admin")
        assert profile.role == "admin"

    async def test_cannot_change_own_role(self, registry):
        with pytest.raises(ValidationError):
            await registry.update_role(SUPER_ADMIN, SUPER_ADMIN, "admin")

    async def test_admin_cannot_change_roles(self, registry):
        with pytest.raises(AuthorizationError):
            await registry.update_role(ADMIN, REVIEWER, "admin")

    async def test_update_role_unknown_target(self, registry):
        with pytest.raises(NotFoundError):
            await registry.update_role(SUPER_ADMIN, "ghost", "admin")

    async def test_delete_admin(self, registry):
        await registry.delete_admin(SUPER_ADMIN, REVIEWER)
        ids = {p.id for p in await registry.list_admins(ADMIN)}
        assert REVIEWER not in ids

    async def test_cannot_delete_self(self, registry):
        with pytest.raises(ValidationError):
            await registry.delete_admin(SUPER_ADMIN, SUPER_ADMIN)

    async def test_delete_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.delete_admin(SUPER_ADMIN, "ghost")

    async def test_complete_first_login(self, registry):
        await registry.create_admin(ADMIN, "new-1", "new@sjcba.edu.in", "reviewer")

        profile = await registry.complete_first_login("new-1")
        assert profile.first_login is False
        assert models.AdminRole(profile.role) is models.AdminRole.REVIEWER
