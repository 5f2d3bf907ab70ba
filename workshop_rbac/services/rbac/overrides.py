"""
Override Store
User-specific permission grants and revocations with optional expiry
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from workshop_rbac.core.clock import utcnow
from workshop_rbac.db.models import Permission, UserPermissionOverride
from workshop_rbac.models.rbac import OverrideInfo


class OverrideStore:
    """
    Per-user overrides

    At most one row exists per (organization, user, permission); writes are
    upserts, so the latest administrative write replaces any earlier one.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_overrides_for_user(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> List[OverrideInfo]:
        """All overrides for a user, expired ones included"""
        result = await self.session.execute(
            select(UserPermissionOverride, Permission.key)
            .join(Permission, UserPermissionOverride.permission_id == Permission.id)
            .where(
                UserPermissionOverride.organization_id == organization_id,
                UserPermissionOverride.user_id == user_id,
                Permission.organization_id == organization_id,
            )
            .order_by(UserPermissionOverride.updated_at)
        )
        return [
            OverrideInfo(
                organization_id=override.organization_id,
                user_id=override.user_id,
                permission_key=key,
                is_granted=override.is_granted,
                expires_at=override.expires_at,
                updated_at=override.updated_at,
            )
            for override, key in result.all()
        ]

    async def list_active_overrides(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> List[OverrideInfo]:
        now = now or utcnow()
        overrides = await self.list_overrides_for_user(organization_id, user_id)
        return [override for override in overrides if override.is_effective(now)]

    async def get_override_row(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_id: uuid.UUID,
    ) -> Optional[UserPermissionOverride]:
        result = await self.session.execute(
            select(UserPermissionOverride).where(
                UserPermissionOverride.organization_id == organization_id,
                UserPermissionOverride.user_id == user_id,
                UserPermissionOverride.permission_id == permission_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_override(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_id: uuid.UUID,
        is_granted: bool,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        granted_by: Optional[uuid.UUID] = None,
    ) -> UserPermissionOverride:
        existing = await self.get_override_row(organization_id, user_id, permission_id)

        if existing:
            existing.is_granted = is_granted
            existing.expires_at = expires_at
            existing.reason = reason
            existing.granted_by = granted_by
            existing.updated_at = utcnow()
            await self.session.flush()
            return existing

        override = UserPermissionOverride(
            organization_id=organization_id,
            user_id=user_id,
            permission_id=permission_id,
            is_granted=is_granted,
            expires_at=expires_at,
            reason=reason,
            granted_by=granted_by,
        )
        self.session.add(override)
        await self.session.flush()
        return override

    async def delete_override(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_id: uuid.UUID,
    ) -> bool:
        result = await self.session.execute(
            delete(UserPermissionOverride).where(
                UserPermissionOverride.organization_id == organization_id,
                UserPermissionOverride.user_id == user_id,
                UserPermissionOverride.permission_id == permission_id,
            )
        )
        return result.rowcount > 0
