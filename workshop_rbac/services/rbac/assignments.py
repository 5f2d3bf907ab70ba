"""
Assignment Store
User -> role assignments and role -> permission grants
"""

import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from workshop_rbac.db.models import Permission, Role, RolePermission, UserRole
from workshop_rbac.models.rbac import PermissionInfo, RoleInfo


class AssignmentStore:
    """Role memberships and static role grants"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_roles_for_user(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[RoleInfo]:
        """Roles held by a user; an empty list for users without roles"""
        query = (
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(
                UserRole.user_id == user_id,
                UserRole.organization_id == organization_id,
                Role.organization_id == organization_id,
            )
        )
        if active_only:
            query = query.where(Role.is_active.is_(True))
        result = await self.session.execute(query.order_by(Role.is_system_role.desc(), Role.key))
        return [RoleInfo.model_validate(row) for row in result.scalars().all()]

    async def list_permissions_for_role(
        self,
        organization_id: uuid.UUID,
        role_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[PermissionInfo]:
        by_role = await self.list_permissions_for_roles(organization_id, [role_id], active_only)
        return by_role.get(role_id, [])

    async def list_permissions_for_roles(
        self,
        organization_id: uuid.UUID,
        role_ids: Iterable[uuid.UUID],
        active_only: bool = True,
    ) -> Dict[uuid.UUID, List[PermissionInfo]]:
        """Grant sets for several roles in one query, keyed by role id"""
        role_ids = list(role_ids)
        if not role_ids:
            return {}

        query = (
            select(RolePermission.role_id, Permission)
            .join(Permission, RolePermission.permission_id == Permission.id)
            .where(
                RolePermission.role_id.in_(role_ids),
                RolePermission.organization_id == organization_id,
                Permission.organization_id == organization_id,
            )
        )
        if active_only:
            query = query.where(Permission.is_active.is_(True))

        result = await self.session.execute(query.order_by(Permission.key))
        grants: Dict[uuid.UUID, List[PermissionInfo]] = {}
        for role_id, permission in result.all():
            grants.setdefault(role_id, []).append(PermissionInfo.model_validate(permission))
        return grants

    async def get_assignment(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
    ) -> Optional[UserRole]:
        result = await self.session.execute(
            select(UserRole).where(
                UserRole.organization_id == organization_id,
                UserRole.user_id == user_id,
                UserRole.role_id == role_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_assignment(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
        assigned_by: Optional[uuid.UUID] = None,
    ) -> UserRole:
        """Assign a role; assigning an already-held role is a no-op"""
        existing = await self.get_assignment(organization_id, user_id, role_id)
        if existing:
            return existing

        assignment = UserRole(
            organization_id=organization_id,
            user_id=user_id,
            role_id=role_id,
            assigned_by=assigned_by,
        )
        self.session.add(assignment)
        await self.session.flush()
        return assignment

    async def remove_assignment(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        role_id: uuid.UUID,
    ) -> bool:
        result = await self.session.execute(
            delete(UserRole).where(
                UserRole.organization_id == organization_id,
                UserRole.user_id == user_id,
                UserRole.role_id == role_id,
            )
        )
        return result.rowcount > 0

    async def count_users_with_role(self, organization_id: uuid.UUID, role_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(func.distinct(UserRole.user_id))).where(
                UserRole.organization_id == organization_id,
                UserRole.role_id == role_id,
            )
        )
        return int(result.scalar_one())

    async def list_role_permission_ids(self, organization_id: uuid.UUID, role_id: uuid.UUID) -> List[uuid.UUID]:
        result = await self.session.execute(
            select(RolePermission.permission_id).where(
                RolePermission.organization_id == organization_id,
                RolePermission.role_id == role_id,
            )
        )
        return list(result.scalars().all())

    async def add_role_permission(
        self,
        organization_id: uuid.UUID,
        role_id: uuid.UUID,
        permission_id: uuid.UUID,
        granted_by: Optional[uuid.UUID] = None,
    ) -> bool:
        """Grant a permission to a role; returns False if it was already granted"""
        result = await self.session.execute(
            select(RolePermission.id).where(
                RolePermission.role_id == role_id,
                RolePermission.permission_id == permission_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return False

        self.session.add(
            RolePermission(
                organization_id=organization_id,
                role_id=role_id,
                permission_id=permission_id,
                granted_by=granted_by,
            )
        )
        await self.session.flush()
        return True

    async def remove_role_permission(
        self,
        organization_id: uuid.UUID,
        role_id: uuid.UUID,
        permission_id: uuid.UUID,
    ) -> bool:
        result = await self.session.execute(
            delete(RolePermission).where(
                RolePermission.organization_id == organization_id,
                RolePermission.role_id == role_id,
                RolePermission.permission_id == permission_id,
            )
        )
        return result.rowcount > 0
