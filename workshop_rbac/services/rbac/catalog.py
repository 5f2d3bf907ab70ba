"""
Catalog Store
Permission and role definitions, scoped to an organization
"""

import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workshop_rbac.db.models import Permission, Role
from workshop_rbac.models.rbac import PermissionInfo, RoleInfo


class CatalogStore:
    """
    Read access to the permission/role catalog

    Lookups return ``None`` for unknown keys: a stale reference is an
    expected outcome, not an error.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_permission_row(self, organization_id: uuid.UUID, key: str) -> Optional[Permission]:
        result = await self.session.execute(
            select(Permission).where(
                Permission.organization_id == organization_id,
                Permission.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def get_permission(self, organization_id: uuid.UUID, key: str) -> Optional[PermissionInfo]:
        row = await self.get_permission_row(organization_id, key)
        return PermissionInfo.model_validate(row) if row else None

    async def get_permission_rows(
        self,
        organization_id: uuid.UUID,
        keys: Iterable[str],
    ) -> Dict[str, Permission]:
        """Fetch several permissions at once, keyed by permission key"""
        keys = set(keys)
        if not keys:
            return {}
        result = await self.session.execute(
            select(Permission).where(
                Permission.organization_id == organization_id,
                Permission.key.in_(keys),
            )
        )
        return {row.key: row for row in result.scalars().all()}

    async def list_active_permissions(self, organization_id: uuid.UUID) -> List[PermissionInfo]:
        return await self.list_permissions(organization_id, include_inactive=False)

    async def list_permissions(
        self,
        organization_id: uuid.UUID,
        include_inactive: bool = True,
        category: Optional[str] = None,
    ) -> List[PermissionInfo]:
        query = select(Permission).where(Permission.organization_id == organization_id)
        if not include_inactive:
            query = query.where(Permission.is_active.is_(True))
        if category:
            query = query.where(Permission.category == category)
        result = await self.session.execute(query.order_by(Permission.key))
        return [PermissionInfo.model_validate(row) for row in result.scalars().all()]

    async def get_role_row(self, organization_id: uuid.UUID, key: str) -> Optional[Role]:
        result = await self.session.execute(
            select(Role).where(
                Role.organization_id == organization_id,
                Role.key == key,
            )
        )
        return result.scalar_one_or_none()

    async def get_role(self, organization_id: uuid.UUID, key: str) -> Optional[RoleInfo]:
        row = await self.get_role_row(organization_id, key)
        return RoleInfo.model_validate(row) if row else None

    async def list_roles(self, organization_id: uuid.UUID, active_only: bool = False) -> List[RoleInfo]:
        query = select(Role).where(Role.organization_id == organization_id)
        if active_only:
            query = query.where(Role.is_active.is_(True))
        # System roles first, then alphabetical
        result = await self.session.execute(query.order_by(Role.is_system_role.desc(), Role.key))
        return [RoleInfo.model_validate(row) for row in result.scalars().all()]

    async def add_permission(
        self,
        organization_id: uuid.UUID,
        key: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Permission:
        permission = Permission(
            organization_id=organization_id,
            key=key,
            resource=resource,
            action=action,
            description=description,
            category=category,
        )
        self.session.add(permission)
        await self.session.flush()
        return permission

    async def add_role(
        self,
        organization_id: uuid.UUID,
        key: str,
        name: str,
        is_system_role: bool = False,
        description: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> Role:
        role = Role(
            organization_id=organization_id,
            key=key,
            name=name,
            is_system_role=is_system_role,
            description=description,
            created_by=created_by,
        )
        self.session.add(role)
        await self.session.flush()
        return role
