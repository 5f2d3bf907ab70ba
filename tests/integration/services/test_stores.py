#!/usr/bin/env python3
"""
Integration Tests for RBAC Stores
Tests for workshop_rbac/services/rbac/{catalog,assignments,overrides}.py
"""

import uuid
from datetime import timedelta

import pytest

from workshop_rbac.services.rbac.assignments import AssignmentStore
from workshop_rbac.services.rbac.catalog import CatalogStore
from workshop_rbac.services.rbac.overrides import OverrideStore


class TestCatalogStore:
    """Permission and role lookups"""

    @pytest.mark.asyncio
    async def test_missing_permission_is_none(self, session_factory, workshop):
        """Test an unknown key is a normal None result"""
        async with session_factory() as session:
            assert await CatalogStore(session).get_permission(workshop, "paint.spray") is None

    @pytest.mark.asyncio
    async def test_lookup_is_scoped_to_organization(self, session_factory, workshop, other_org_id):
        """Test another organization cannot see the catalog"""
        async with session_factory() as session:
            catalog = CatalogStore(session)
            assert await catalog.get_permission(other_org_id, "invoices.view") is None
            assert await catalog.get_role(other_org_id, "technician") is None
            assert await catalog.list_active_permissions(other_org_id) == []

    @pytest.mark.asyncio
    async def test_list_active_permissions_excludes_inactive(self, session_factory, admin, workshop):
        """Test deactivated permissions drop out of the active list"""
        await admin.set_permission_active(workshop, "salaries.view", False)

        async with session_factory() as session:
            catalog = CatalogStore(session)
            active = {p.key for p in await catalog.list_active_permissions(workshop)}
            everything = {p.key for p in await catalog.list_permissions(workshop)}

        assert "salaries.view" not in active
        assert "salaries.view" in everything
        assert len(everything) == len(active) + 1

    @pytest.mark.asyncio
    async def test_list_roles_puts_system_roles_first(self, session_factory, workshop):
        """Test role listing order"""
        async with session_factory() as session:
            roles = await CatalogStore(session).list_roles(workshop)

        assert [role.key for role in roles] == ["admin", "technician", "accountant", "receptionist"]


class TestAssignmentStore:
    """Role memberships and grants"""

    @pytest.mark.asyncio
    async def test_user_without_roles(self, session_factory, workshop):
        """Test an unknown user has an empty role list"""
        async with session_factory() as session:
            assert await AssignmentStore(session).list_roles_for_user(workshop, uuid.uuid4()) == []

    @pytest.mark.asyncio
    async def test_inactive_roles_filtered_on_request(self, session_factory, admin, workshop, user_id):
        """Test active_only hides deactivated roles"""
        await admin.assign_role(workshop, user_id, "technician")
        await admin.assign_role(workshop, user_id, "receptionist")
        await admin.set_role_active(workshop, "receptionist", False)

        async with session_factory() as session:
            assignments = AssignmentStore(session)
            active = await assignments.list_roles_for_user(workshop, user_id)
            every = await assignments.list_roles_for_user(workshop, user_id, active_only=False)

        assert [role.key for role in active] == ["technician"]
        assert {role.key for role in every} == {"technician", "receptionist"}

    @pytest.mark.asyncio
    async def test_permissions_for_roles(self, session_factory, workshop):
        """Test grant sets are returned per role"""
        async with session_factory() as session:
            catalog = CatalogStore(session)
            technician = await catalog.get_role(workshop, "technician")
            accountant = await catalog.get_role(workshop, "accountant")

            by_role = await AssignmentStore(session).list_permissions_for_roles(
                workshop, [technician.id, accountant.id]
            )

        assert {p.key for p in by_role[technician.id]} == {"work_orders.view", "work_orders.create"}
        assert {p.key for p in by_role[accountant.id]} == {"invoices.view", "customers.view"}

    @pytest.mark.asyncio
    async def test_permissions_for_role_skips_inactive(self, session_factory, admin, workshop):
        """Test a role's grant list drops deactivated permissions unless asked"""
        await admin.set_permission_active(workshop, "work_orders.create", False)

        async with session_factory() as session:
            technician = await CatalogStore(session).get_role(workshop, "technician")
            assignments = AssignmentStore(session)
            active = await assignments.list_permissions_for_role(workshop, technician.id)
            every = await assignments.list_permissions_for_role(workshop, technician.id, active_only=False)

        assert [p.key for p in active] == ["work_orders.view"]
        assert [p.key for p in every] == ["work_orders.create", "work_orders.view"]

    @pytest.mark.asyncio
    async def test_permissions_for_no_roles(self, session_factory, workshop):
        """Test an empty role list needs no query"""
        async with session_factory() as session:
            assert await AssignmentStore(session).list_permissions_for_roles(workshop, []) == {}


class TestOverrideStore:
    """User overrides"""

    @pytest.mark.asyncio
    async def test_active_overrides_filter_expired(self, session_factory, workshop, user_id, clock):
        """Test expired overrides are left out without deleting them"""
        async with session_factory() as session:
            catalog = CatalogStore(session)
            overrides = OverrideStore(session)
            invoices = await catalog.get_permission(workshop, "invoices.view")
            salaries = await catalog.get_permission(workshop, "salaries.view")

            await overrides.upsert_override(
                workshop, user_id, invoices.id, True, expires_at=clock() - timedelta(hours=1)
            )
            await overrides.upsert_override(
                workshop, user_id, salaries.id, True, expires_at=clock() + timedelta(hours=1)
            )
            await session.commit()

            every = await overrides.list_overrides_for_user(workshop, user_id)
            active = await overrides.list_active_overrides(workshop, user_id, now=clock())

        assert {o.permission_key for o in every} == {"invoices.view", "salaries.view"}
        assert [o.permission_key for o in active] == ["salaries.view"]

    @pytest.mark.asyncio
    async def test_overrides_scoped_to_organization(self, session_factory, admin, workshop, other_org_id, user_id):
        """Test overrides in one organization are invisible from another"""
        await admin.set_override(workshop, user_id, "invoices.view", is_granted=True)

        async with session_factory() as session:
            assert await OverrideStore(session).list_overrides_for_user(other_org_id, user_id) == []
