"""
Authorization Check API
The single entry point the rest of the application calls before acting
"""

import uuid
from typing import Callable, FrozenSet, Iterable, List, Optional, Union

from workshop_rbac.core.exceptions import AuthorizationException
from workshop_rbac.core.logging import get_logger
from workshop_rbac.models.rbac import PermissionSnapshot, RoleInfo
from workshop_rbac.monitoring.metrics import authz_check_errors_total, authz_checks_total
from workshop_rbac.services.rbac.assignments import AssignmentStore
from workshop_rbac.services.rbac.snapshot import SnapshotCache

logger = get_logger(__name__)

Identifier = Union[uuid.UUID, str]


def _as_uuid(value: Identifier) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class AuthorizationService:
    """
    Permission checks for a user inside an organization

    Every boolean check is total and fails closed: unknown users, malformed
    identifiers, database errors and cache failures all answer ``False``.
    Pass ``fresh=True`` to bypass the snapshot cache for sensitive,
    irreversible operations.
    """

    def __init__(self, cache: SnapshotCache):
        self.cache = cache

    @property
    def resolver(self):
        return self.cache.resolver

    async def get_snapshot(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        fresh: bool = False,
    ) -> PermissionSnapshot:
        """Resolved permissions for a user; raises on failure"""
        user_id = _as_uuid(user_id)
        organization_id = _as_uuid(organization_id)
        if fresh:
            return await self.resolver.resolve(organization_id, user_id)
        return await self.cache.get_or_refresh(organization_id, user_id)

    async def _check(
        self,
        check: str,
        user_id: Identifier,
        organization_id: Identifier,
        predicate: Callable[[PermissionSnapshot], bool],
        fresh: bool,
    ) -> bool:
        try:
            snapshot = await self.get_snapshot(user_id, organization_id, fresh=fresh)
            allowed = bool(predicate(snapshot))
        except Exception as e:
            logger.error(f"{check} failed for user {user_id} in {organization_id}, denying: {e!r}")
            authz_check_errors_total.labels(error_type=type(e).__name__).inc()
            allowed = False

        authz_checks_total.labels(check=check, result="allow" if allowed else "deny").inc()
        return allowed

    async def has_permission(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        permission_key: str,
        fresh: bool = False,
    ) -> bool:
        allowed = await self._check(
            "has_permission", user_id, organization_id,
            lambda snapshot: snapshot.has(permission_key),
            fresh,
        )
        if not allowed:
            logger.debug(f"User {user_id} denied {permission_key} in {organization_id}")
        return allowed

    async def is_admin(self, user_id: Identifier, organization_id: Identifier, fresh: bool = False) -> bool:
        return await self._check(
            "is_admin", user_id, organization_id,
            lambda snapshot: snapshot.is_admin,
            fresh,
        )

    async def has_any_permission(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        permission_keys: Iterable[str],
        fresh: bool = False,
    ) -> bool:
        keys = list(permission_keys)
        return await self._check(
            "has_any_permission", user_id, organization_id,
            lambda snapshot: any(snapshot.has(key) for key in keys),
            fresh,
        )

    async def has_all_permissions(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        permission_keys: Iterable[str],
        fresh: bool = False,
    ) -> bool:
        keys = list(permission_keys)
        return await self._check(
            "has_all_permissions", user_id, organization_id,
            lambda snapshot: all(snapshot.has(key) for key in keys),
            fresh,
        )

    async def has_role(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        role_key: str,
        fresh: bool = False,
    ) -> bool:
        return await self._check(
            "has_role", user_id, organization_id,
            lambda snapshot: role_key in snapshot.role_keys,
            fresh,
        )

    async def get_permissions(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        fresh: bool = False,
    ) -> FrozenSet[str]:
        """Effective permission keys; empty on any failure"""
        try:
            snapshot = await self.get_snapshot(user_id, organization_id, fresh=fresh)
        except Exception as e:
            logger.error(f"Could not resolve permissions for user {user_id} in {organization_id}: {e!r}")
            authz_check_errors_total.labels(error_type=type(e).__name__).inc()
            return frozenset()
        return snapshot.permissions

    async def get_active_roles(self, user_id: Identifier, organization_id: Identifier) -> List[RoleInfo]:
        async with self.resolver.session_factory() as session:
            return await AssignmentStore(session).list_roles_for_user(
                _as_uuid(organization_id), _as_uuid(user_id)
            )

    async def require_permission(
        self,
        user_id: Identifier,
        organization_id: Identifier,
        permission_key: str,
        fresh: bool = False,
        details: Optional[dict] = None,
    ) -> None:
        """
        Require permission or raise exception

        Raises:
            AuthorizationException: If the user does not hold the permission
        """
        if not await self.has_permission(user_id, organization_id, permission_key, fresh=fresh):
            raise AuthorizationException(
                message=f"Access denied: Missing '{permission_key}' permission",
                details={"required_permission": permission_key, **(details or {})},
            )
