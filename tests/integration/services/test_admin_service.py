#!/usr/bin/env python3
"""
Integration Tests for RBAC Administration
Tests for workshop_rbac/services/rbac/admin.py against a SQLite database
"""

import uuid
from datetime import timedelta

import pytest

from workshop_rbac.core.exceptions import ConflictException, NotFoundException, ValidationException
from workshop_rbac.services.rbac.catalog import CatalogStore
from workshop_rbac.services.rbac.overrides import OverrideStore


class TestCatalogAdministration:
    """Permissions and roles"""

    @pytest.mark.asyncio
    async def test_permission_key_cannot_be_repurposed(self, admin, workshop):
        """Test a key keeps its resource/action for good"""
        with pytest.raises(ConflictException):
            await admin.create_permission(workshop, "invoices.view", "invoices", "export")

    @pytest.mark.asyncio
    async def test_identical_permission_definition_is_a_noop(self, admin, workshop, session_factory):
        """Test re-seeding the same permission returns the existing row"""
        async with session_factory() as session:
            before = await CatalogStore(session).get_permission(workshop, "invoices.view")

        again = await admin.create_permission(workshop, "invoices.view", "invoices", "view")

        assert again.id == before.id

    @pytest.mark.asyncio
    async def test_permission_requires_key_resource_action(self, admin, org_id):
        """Test incomplete definitions are rejected"""
        with pytest.raises(ValidationException):
            await admin.create_permission(org_id, "", "invoices", "view")

    @pytest.mark.asyncio
    async def test_same_key_in_two_organizations(self, admin, workshop, other_org_id):
        """Test permission keys are unique per organization only"""
        created = await admin.create_permission(other_org_id, "invoices.view", "billing", "read")
        assert created.organization_id == other_org_id

    @pytest.mark.asyncio
    async def test_create_role_with_unknown_permission(self, admin, workshop):
        """Test roles cannot reference undefined permissions"""
        with pytest.raises(ValidationException) as exc_info:
            await admin.create_role(workshop, "painter", "Painter", permission_keys=["paint.spray"])
        assert exc_info.value.details["permission_keys"] == ["paint.spray"]

    @pytest.mark.asyncio
    async def test_duplicate_role(self, admin, workshop):
        """Test role keys are unique per organization"""
        with pytest.raises(ConflictException):
            await admin.create_role(workshop, "technician", "Another technician")

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_deleted(self, admin, workshop):
        """Test seeded roles are protected"""
        with pytest.raises(ConflictException) as exc_info:
            await admin.delete_role(workshop, "admin")
        assert exc_info.value.message == "Cannot delete system role"

    @pytest.mark.asyncio
    async def test_held_role_cannot_be_deleted(self, admin, workshop, user_id):
        """Test a referenced role must be deactivated instead"""
        await admin.assign_role(workshop, user_id, "accountant")
        with pytest.raises(ConflictException):
            await admin.delete_role(workshop, "accountant")

    @pytest.mark.asyncio
    async def test_delete_unused_custom_role(self, admin, workshop, session_factory):
        """Test an unassigned custom role is removed with its grants"""
        await admin.delete_role(workshop, "accountant")

        async with session_factory() as session:
            assert await CatalogStore(session).get_role(workshop, "accountant") is None

    @pytest.mark.asyncio
    async def test_missing_role(self, admin, workshop, user_id):
        """Test operations on unknown roles raise NotFound"""
        with pytest.raises(NotFoundException):
            await admin.assign_role(workshop, user_id, "painter")

    @pytest.mark.asyncio
    async def test_set_role_permissions_replaces_grants(self, admin, authz, workshop, user_id):
        """Test the grant set is replaced, not merged"""
        await admin.assign_role(workshop, user_id, "accountant")

        result = await admin.set_role_permissions(workshop, "accountant", ["invoices.view", "invoices.delete"])

        assert result == ["invoices.delete", "invoices.view"]
        assert await authz.get_permissions(user_id, workshop) == {"invoices.view", "invoices.delete"}

    @pytest.mark.asyncio
    async def test_add_existing_role_permission_is_false(self, admin, workshop):
        """Test granting a permission the role already has changes nothing"""
        assert await admin.add_role_permission(workshop, "technician", "work_orders.view") is False
        assert await admin.remove_role_permission(workshop, "technician", "work_orders.view") is True
        assert await admin.remove_role_permission(workshop, "technician", "work_orders.view") is False


class TestAssignments:
    """User role assignments"""

    @pytest.mark.asyncio
    async def test_assign_inactive_role_rejected(self, admin, workshop, user_id):
        """Test deactivated roles cannot be handed out"""
        await admin.set_role_active(workshop, "receptionist", False)
        with pytest.raises(ValidationException):
            await admin.assign_role(workshop, user_id, "receptionist")

    @pytest.mark.asyncio
    async def test_assign_is_idempotent_and_counted(self, admin, workshop, user_id):
        """Test assigning twice keeps one membership"""
        await admin.assign_role(workshop, user_id, "technician")
        await admin.assign_role(workshop, user_id, "technician")
        await admin.assign_role(workshop, uuid.uuid4(), "technician")

        assert await admin.count_users_with_role(workshop, "technician") == 2

    @pytest.mark.asyncio
    async def test_remove_role(self, admin, authz, workshop, user_id):
        """Test removing a role revokes its permissions"""
        await admin.assign_role(workshop, user_id, "technician")
        assert await authz.has_permission(user_id, workshop, "work_orders.view") is True

        assert await admin.remove_role(workshop, user_id, "technician") is True
        assert await admin.remove_role(workshop, user_id, "technician") is False
        assert await authz.has_permission(user_id, workshop, "work_orders.view") is False


class TestOverrides:
    """Grant and revoke overrides"""

    @pytest.mark.asyncio
    async def test_unknown_permission_key_rejected(self, admin, workshop, user_id):
        """Test overrides must reference a catalog permission"""
        with pytest.raises(ValidationException):
            await admin.set_override(workshop, user_id, "paint.spray", is_granted=True)

    @pytest.mark.asyncio
    async def test_key_from_other_organization_rejected(self, admin, workshop, other_org_id, user_id):
        """Test an override cannot point into another tenant's catalog"""
        with pytest.raises(ValidationException):
            await admin.set_override(other_org_id, user_id, "invoices.view", is_granted=True)

    @pytest.mark.asyncio
    async def test_expiry_in_the_past_rejected(self, admin, workshop, user_id, clock):
        """Test an override that would already be inert is refused"""
        with pytest.raises(ValidationException):
            await admin.set_override(
                workshop, user_id, "invoices.view", is_granted=True, expires_at=clock() - timedelta(minutes=1)
            )
        with pytest.raises(ValidationException):
            await admin.set_override(workshop, user_id, "invoices.view", is_granted=True, expires_at=clock())

    @pytest.mark.asyncio
    async def test_latest_override_wins(self, admin, authz, workshop, user_id, session_factory):
        """Test a second override for the same key replaces the first"""
        await admin.set_override(workshop, user_id, "invoices.view", is_granted=True)
        result = await admin.set_override(workshop, user_id, "invoices.view", is_granted=False, reason="audit")

        assert result.is_granted is False
        assert await authz.has_permission(user_id, workshop, "invoices.view") is False

        async with session_factory() as session:
            overrides = await OverrideStore(session).list_overrides_for_user(workshop, user_id)
        assert len(overrides) == 1

    @pytest.mark.asyncio
    async def test_remove_missing_override(self, admin, workshop, user_id):
        """Test removing an override that does not exist reports False"""
        assert await admin.remove_override(workshop, user_id, "invoices.view") is False


class TestAuditLog:
    """Administrative audit trail"""

    @pytest.mark.asyncio
    async def test_writes_are_audited(self, admin, workshop, user_id):
        """Test each administrative write leaves an audit row"""
        actor = uuid.uuid4()
        await admin.assign_role(workshop, user_id, "technician", actor_id=actor)
        await admin.set_override(workshop, user_id, "invoices.view", is_granted=False, actor_id=actor)

        logs = await admin.list_audit_logs(workshop, limit=500)
        actions = {log.action for log in logs}

        assert {"permission.create", "role.create", "user.role.assign", "override.revoke"} <= actions
        assert all(log.organization_id == workshop for log in logs)
        assigned = [log for log in logs if log.action == "user.role.assign"]
        assert assigned[0].actor_id == actor
        assert assigned[0].new_value == {"role": "technician"}

    @pytest.mark.asyncio
    async def test_audit_log_is_per_organization(self, admin, workshop, other_org_id):
        """Test audit rows are not shared between tenants"""
        assert await admin.list_audit_logs(other_org_id) == []
