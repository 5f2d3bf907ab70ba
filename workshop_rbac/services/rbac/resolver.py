"""
Permission Resolution Engine

Precedence, applied to one user inside one organization:

1. Only active roles of the organization count.
2. Holding the admin role grants every active permission; overrides are
   ignored.
3. Otherwise the base set is the union of the active roles' grants.
4. Overrides that have not expired are split into grants and revokes.
5. result = (base | granted) - revoked; a revoke always wins.
6. Inactive permissions are removed last.
"""

import uuid
from datetime import datetime
from typing import Iterable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_rbac.core.clock import Clock, ensure_utc, utcnow
from workshop_rbac.core.config import settings
from workshop_rbac.core.logging import get_logger
from workshop_rbac.models.rbac import OverrideInfo, PermissionInfo, PermissionSnapshot, RoleInfo
from workshop_rbac.monitoring.metrics import track_resolution
from workshop_rbac.services.rbac.assignments import AssignmentStore
from workshop_rbac.services.rbac.catalog import CatalogStore
from workshop_rbac.services.rbac.overrides import OverrideStore

logger = get_logger(__name__)


def resolve_snapshot(
    *,
    user_id: uuid.UUID,
    organization_id: uuid.UUID,
    roles: Iterable[RoleInfo],
    role_permissions: Mapping[uuid.UUID, Iterable[PermissionInfo]],
    active_permissions: Iterable[PermissionInfo],
    overrides: Iterable[OverrideInfo],
    now: datetime,
    admin_role_key: Optional[str] = None,
) -> PermissionSnapshot:
    """
    Compute a user's permissions from already-loaded store data

    Pure function: no I/O, no clock access. Records belonging to another
    organization are ignored even if their keys collide.
    """
    admin_role_key = admin_role_key or settings.ADMIN_ROLE_KEY
    now = ensure_utc(now)

    held_roles = [
        role for role in roles
        if role.is_active and role.organization_id == organization_id
    ]
    role_keys = frozenset(role.key for role in held_roles)
    catalog = frozenset(
        permission.key for permission in active_permissions
        if permission.is_active and permission.organization_id == organization_id
    )

    if admin_role_key in role_keys:
        return PermissionSnapshot(
            user_id=user_id,
            organization_id=organization_id,
            is_admin=True,
            role_keys=role_keys,
            role_permissions=catalog,
            computed_at=now,
        )

    base = frozenset(
        permission.key
        for role in held_roles
        for permission in role_permissions.get(role.id, ())
        if permission.is_active and permission.organization_id == organization_id
    )

    effective = [
        override for override in overrides
        if override.organization_id == organization_id
        and override.user_id == user_id
        and override.is_effective(now)
    ]
    granted = frozenset(o.permission_key for o in effective if o.is_granted)
    revoked = frozenset(o.permission_key for o in effective if not o.is_granted)

    expiries = [ensure_utc(o.expires_at) for o in effective if o.expires_at is not None]

    return PermissionSnapshot(
        user_id=user_id,
        organization_id=organization_id,
        is_admin=False,
        role_keys=role_keys,
        # Kill-switch: inactive catalog entries never survive
        role_permissions=base & catalog,
        granted_overrides=granted & catalog,
        revoked_overrides=revoked,
        computed_at=now,
        valid_until=min(expiries) if expiries else None,
    )


class PermissionResolver:
    """
    Loads store data and resolves it

    Runs on its own session factory: the resolver may be bound to an
    elevated read-only database role that can see assignment and override
    rows the calling user cannot.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        admin_role_key: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.admin_role_key = admin_role_key or settings.ADMIN_ROLE_KEY
        self.clock = clock

    @track_resolution
    async def resolve(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> PermissionSnapshot:
        now = now or self.clock()
        async with self.session_factory() as session:
            return await self.resolve_in_session(session, organization_id, user_id, now)

    async def resolve_in_session(
        self,
        session: AsyncSession,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        now: datetime,
    ) -> PermissionSnapshot:
        catalog = CatalogStore(session)
        assignments = AssignmentStore(session)

        roles = await assignments.list_roles_for_user(organization_id, user_id)
        active_permissions = await catalog.list_active_permissions(organization_id)

        role_permissions: Mapping[uuid.UUID, Iterable[PermissionInfo]] = {}
        overrides: Iterable[OverrideInfo] = []
        if not any(role.key == self.admin_role_key for role in roles):
            role_permissions = await assignments.list_permissions_for_roles(
                organization_id, [role.id for role in roles]
            )
            overrides = await OverrideStore(session).list_overrides_for_user(organization_id, user_id)

        snapshot = resolve_snapshot(
            user_id=user_id,
            organization_id=organization_id,
            roles=roles,
            role_permissions=role_permissions,
            active_permissions=active_permissions,
            overrides=overrides,
            now=now,
            admin_role_key=self.admin_role_key,
        )
        logger.debug(
            f"Resolved {len(snapshot.permissions)} permissions for user {user_id} "
            f"in organization {organization_id} (admin={snapshot.is_admin})"
        )
        return snapshot
