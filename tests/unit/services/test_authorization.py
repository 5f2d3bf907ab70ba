#!/usr/bin/env python3
"""
Unit Tests for Authorization Service
Tests for workshop_rbac/services/rbac/authorization.py
"""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from workshop_rbac.core.exceptions import AuthorizationException
from workshop_rbac.models.rbac import PermissionSnapshot
from workshop_rbac.services.rbac.authorization import AuthorizationService

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ORG = uuid.uuid4()
USER = uuid.uuid4()


def snapshot(**kwargs):
    return PermissionSnapshot(user_id=USER, organization_id=ORG, computed_at=NOW, **kwargs)


@pytest.fixture
def cache():
    cache = MagicMock()
    cache.get_or_refresh = AsyncMock(return_value=snapshot(
        role_keys=frozenset({"technician"}),
        role_permissions=frozenset({"work_orders.view", "work_orders.create"}),
        revoked_overrides=frozenset({"work_orders.create"}),
    ))
    cache.resolver.resolve = AsyncMock(return_value=snapshot(
        role_permissions=frozenset({"invoices.view"}),
    ))
    return cache


@pytest.fixture
def service(cache):
    return AuthorizationService(cache)


class TestHasPermission:
    """Permission checks"""

    @pytest.mark.asyncio
    async def test_allows_resolved_permission(self, service):
        """Test a permission in the snapshot is allowed"""
        assert await service.has_permission(USER, ORG, "work_orders.view") is True

    @pytest.mark.asyncio
    async def test_revoked_permission_denied(self, service):
        """Test revoked keys are excluded"""
        assert await service.has_permission(USER, ORG, "work_orders.create") is False

    @pytest.mark.asyncio
    async def test_admin_allowed_anything(self, service, cache):
        """Test admin short-circuits the key lookup"""
        cache.get_or_refresh.return_value = snapshot(is_admin=True, role_keys=frozenset({"admin"}))

        assert await service.has_permission(USER, ORG, "salaries.view") is True
        assert await service.is_admin(USER, ORG) is True

    @pytest.mark.asyncio
    async def test_fresh_bypasses_cache(self, service, cache):
        """Test fresh checks resolve directly"""
        assert await service.has_permission(USER, ORG, "invoices.view", fresh=True) is True
        cache.get_or_refresh.assert_not_awaited()
        cache.resolver.resolve.assert_awaited_once_with(ORG, USER)


class TestFailClosed:
    """Every failure answers deny"""

    @pytest.mark.asyncio
    async def test_malformed_identifier_denied(self, service, cache):
        """Test a garbage user id is a deny, not an exception"""
        assert await service.has_permission("not-a-uuid", ORG, "work_orders.view") is False
        assert await service.is_admin(USER, "nope") is False
        cache.get_or_refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_database_error_denied(self, service, cache):
        """Test resolver failures deny"""
        cache.get_or_refresh.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))

        assert await service.has_permission(USER, ORG, "work_orders.view") is False
        assert await service.has_any_permission(USER, ORG, ["work_orders.view"]) is False
        assert await service.has_role(USER, ORG, "technician") is False
        assert await service.get_permissions(USER, ORG) == frozenset()

    @pytest.mark.asyncio
    async def test_unexpected_error_denied(self, service, cache):
        """Test even programming errors deny"""
        cache.get_or_refresh.side_effect = RuntimeError("boom")
        assert await service.is_admin(USER, ORG) is False

    @pytest.mark.asyncio
    async def test_require_permission_raises_on_error(self, service, cache):
        """Test the raising variant turns failures into a 403"""
        cache.get_or_refresh.side_effect = RuntimeError("boom")
        with pytest.raises(AuthorizationException):
            await service.require_permission(USER, ORG, "work_orders.view")

    @pytest.mark.asyncio
    async def test_get_snapshot_raises(self, service, cache):
        """Test get_snapshot surfaces the underlying failure"""
        cache.get_or_refresh.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            await service.get_snapshot(USER, ORG)


class TestCombinedChecks:
    """Any/all and role checks"""

    @pytest.mark.asyncio
    async def test_has_any_permission(self, service):
        """Test any-of semantics"""
        assert await service.has_any_permission(USER, ORG, ["invoices.view", "work_orders.view"]) is True
        assert await service.has_any_permission(USER, ORG, ["invoices.view"]) is False
        assert await service.has_any_permission(USER, ORG, []) is False

    @pytest.mark.asyncio
    async def test_has_all_permissions(self, service):
        """Test all-of semantics"""
        assert await service.has_all_permissions(USER, ORG, ["work_orders.view"]) is True
        assert await service.has_all_permissions(USER, ORG, ["work_orders.view", "work_orders.create"]) is False

    @pytest.mark.asyncio
    async def test_has_role(self, service):
        """Test role membership comes from the snapshot"""
        assert await service.has_role(USER, ORG, "technician") is True
        assert await service.has_role(USER, ORG, "admin") is False

    @pytest.mark.asyncio
    async def test_get_permissions(self, service):
        """Test the effective set"""
        assert await service.get_permissions(USER, ORG) == {"work_orders.view"}
