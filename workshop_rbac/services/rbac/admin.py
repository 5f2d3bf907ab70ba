"""
RBAC Administration
Validated writes to the stores, each followed by snapshot invalidation
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_rbac.core.clock import Clock, ensure_utc, utcnow
from workshop_rbac.core.exceptions import ConflictException, NotFoundException, ValidationException
from workshop_rbac.core.logging import get_logger
from workshop_rbac.db.models import Permission, RBACAuditLog, Role, RolePermission
from workshop_rbac.models.rbac import OverrideInfo, PermissionInfo, RoleInfo
from workshop_rbac.services.rbac.assignments import AssignmentStore
from workshop_rbac.services.rbac.catalog import CatalogStore
from workshop_rbac.services.rbac.overrides import OverrideStore
from workshop_rbac.services.rbac.snapshot import SnapshotCache

logger = get_logger(__name__)


class RBACAdminService:
    """
    Administrative RBAC operations

    Every write is committed before the cache is invalidated. Changes that
    only affect one user invalidate that user; changes to a role's grant set
    or to an activation flag fan out to the whole organization.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: SnapshotCache,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock

    @staticmethod
    async def _audit(
        session: AsyncSession,
        organization_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        action: str,
        resource_type: str,
        resource_id: Optional[Any] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> None:
        session.add(
            RBACAuditLog(
                organization_id=organization_id,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                old_value=old_value,
                new_value=new_value,
            )
        )

    @staticmethod
    async def _require_role(catalog: CatalogStore, organization_id: uuid.UUID, role_key: str) -> Role:
        role = await catalog.get_role_row(organization_id, role_key)
        if role is None:
            raise NotFoundException(
                resource="Role",
                details={"role_key": role_key, "organization_id": str(organization_id)},
            )
        return role

    @staticmethod
    async def _require_permission(catalog: CatalogStore, organization_id: uuid.UUID, permission_key: str) -> Permission:
        permission = await catalog.get_permission_row(organization_id, permission_key)
        if permission is None:
            raise ValidationException(
                message=f"Unknown permission key '{permission_key}'",
                details={"permission_key": permission_key, "organization_id": str(organization_id)},
            )
        return permission

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def create_permission(
        self,
        organization_id: uuid.UUID,
        key: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> PermissionInfo:
        """
        Define a permission

        Re-defining an existing key with the same resource/action is a no-op;
        a key is never reused for a different resource/action.
        """
        if not key or not resource or not action:
            raise ValidationException("key, resource and action are required")

        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            existing = await catalog.get_permission_row(organization_id, key)
            if existing:
                if (existing.resource, existing.action) != (resource, action):
                    raise ConflictException(
                        message=f"Permission key '{key}' already defined for {existing.resource}.{existing.action}",
                        details={"permission_key": key},
                    )
                return PermissionInfo.model_validate(existing)

            permission = await catalog.add_permission(
                organization_id, key, resource, action, description=description, category=category
            )
            await self._audit(
                session, organization_id, actor_id, "permission.create", "permission", permission.id,
                new_value={"key": key, "resource": resource, "action": action},
            )
            await session.commit()
            info = PermissionInfo.model_validate(permission)

        logger.info(f"Created permission {key} in organization {organization_id}")
        # Admin snapshots list the whole active catalog
        await self.cache.invalidate_all(organization_id)
        return info

    async def set_permission_active(
        self,
        organization_id: uuid.UUID,
        permission_key: str,
        is_active: bool,
        actor_id: Optional[uuid.UUID] = None,
    ) -> PermissionInfo:
        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            permission = await catalog.get_permission_row(organization_id, permission_key)
            if permission is None:
                raise NotFoundException(resource="Permission", details={"permission_key": permission_key})

            previous = permission.is_active
            permission.is_active = is_active
            await self._audit(
                session, organization_id, actor_id,
                "permission.activate" if is_active else "permission.deactivate",
                "permission", permission.id,
                old_value={"is_active": previous}, new_value={"is_active": is_active},
            )
            await session.commit()
            info = PermissionInfo.model_validate(permission)

        logger.info(f"Permission {permission_key} is_active={is_active} in organization {organization_id}")
        await self.cache.invalidate_all(organization_id)
        return info

    async def create_role(
        self,
        organization_id: uuid.UUID,
        key: str,
        name: str,
        is_system_role: bool = False,
        permission_keys: Iterable[str] = (),
        description: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> RoleInfo:
        if not key or not name:
            raise ValidationException("Role key and name are required")

        permission_keys = list(permission_keys)
        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            if await catalog.get_role_row(organization_id, key):
                raise ConflictException(message=f"Role '{key}' already exists", details={"role_key": key})

            permissions = await catalog.get_permission_rows(organization_id, permission_keys)
            unknown = sorted(set(permission_keys) - set(permissions))
            if unknown:
                raise ValidationException(
                    message="Unknown permission keys",
                    details={"permission_keys": unknown},
                )

            role = await catalog.add_role(
                organization_id, key, name,
                is_system_role=is_system_role, description=description, created_by=actor_id,
            )
            assignments = AssignmentStore(session)
            for permission in permissions.values():
                await assignments.add_role_permission(organization_id, role.id, permission.id, granted_by=actor_id)

            await self._audit(
                session, organization_id, actor_id, "role.create", "role", role.id,
                new_value={"key": key, "is_system_role": is_system_role, "permissions": sorted(permissions)},
            )
            await session.commit()
            logger.info(f"Created role {key} in organization {organization_id}")
            return RoleInfo.model_validate(role)

    async def set_role_active(
        self,
        organization_id: uuid.UUID,
        role_key: str,
        is_active: bool,
        actor_id: Optional[uuid.UUID] = None,
    ) -> RoleInfo:
        async with self.session_factory() as session:
            role = await self._require_role(CatalogStore(session), organization_id, role_key)
            previous = role.is_active
            role.is_active = is_active
            await self._audit(
                session, organization_id, actor_id,
                "role.activate" if is_active else "role.deactivate",
                "role", role.id,
                old_value={"is_active": previous}, new_value={"is_active": is_active},
            )
            await session.commit()
            info = RoleInfo.model_validate(role)

        logger.info(f"Role {role_key} is_active={is_active} in organization {organization_id}")
        await self.cache.invalidate_all(organization_id)
        return info

    async def delete_role(
        self,
        organization_id: uuid.UUID,
        role_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Delete a custom role nobody holds; otherwise deactivate it instead"""
        async with self.session_factory() as session:
            role = await self._require_role(CatalogStore(session), organization_id, role_key)
            if role.is_system_role:
                raise ConflictException(message="Cannot delete system role", details={"role_key": role_key})

            holders = await AssignmentStore(session).count_users_with_role(organization_id, role.id)
            if holders:
                raise ConflictException(
                    message=f"Role '{role_key}' is assigned to {holders} user(s); deactivate it instead",
                    details={"role_key": role_key, "users": holders},
                )

            await self._audit(
                session, organization_id, actor_id, "role.delete", "role", role.id,
                old_value={"key": role.key},
            )
            await session.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
            await session.execute(delete(Role).where(Role.id == role.id))
            await session.commit()

        logger.info(f"Deleted role {role_key} in organization {organization_id}")

    # ------------------------------------------------------------------
    # Role grants
    # ------------------------------------------------------------------

    async def add_role_permission(
        self,
        organization_id: uuid.UUID,
        role_key: str,
        permission_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> bool:
        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            role = await self._require_role(catalog, organization_id, role_key)
            permission = await self._require_permission(catalog, organization_id, permission_key)

            added = await AssignmentStore(session).add_role_permission(
                organization_id, role.id, permission.id, granted_by=actor_id
            )
            if not added:
                return False
            await self._audit(
                session, organization_id, actor_id, "role.permission.add", "role", role.id,
                new_value={"permission": permission_key},
            )
            await session.commit()

        await self.cache.invalidate_all(organization_id)
        return True

    async def remove_role_permission(
        self,
        organization_id: uuid.UUID,
        role_key: str,
        permission_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> bool:
        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            role = await self._require_role(catalog, organization_id, role_key)
            permission = await self._require_permission(catalog, organization_id, permission_key)

            removed = await AssignmentStore(session).remove_role_permission(
                organization_id, role.id, permission.id
            )
            if not removed:
                return False
            await self._audit(
                session, organization_id, actor_id, "role.permission.remove", "role", role.id,
                old_value={"permission": permission_key},
            )
            await session.commit()

        await self.cache.invalidate_all(organization_id)
        return True

    async def set_role_permissions(
        self,
        organization_id: uuid.UUID,
        role_key: str,
        permission_keys: Iterable[str],
        actor_id: Optional[uuid.UUID] = None,
    ) -> List[str]:
        """Replace a role's grant set; returns the new sorted key list"""
        wanted = set(permission_keys)
        async with self.session_factory() as session:
            catalog = CatalogStore(session)
            assignments = AssignmentStore(session)
            role = await self._require_role(catalog, organization_id, role_key)

            permissions = await catalog.get_permission_rows(organization_id, wanted)
            unknown = sorted(wanted - set(permissions))
            if unknown:
                raise ValidationException(message="Unknown permission keys", details={"permission_keys": unknown})

            current_ids = set(await assignments.list_role_permission_ids(organization_id, role.id))
            wanted_ids = {permission.id for permission in permissions.values()}

            for permission_id in current_ids - wanted_ids:
                await assignments.remove_role_permission(organization_id, role.id, permission_id)
            for permission_id in wanted_ids - current_ids:
                await assignments.add_role_permission(organization_id, role.id, permission_id, granted_by=actor_id)

            await self._audit(
                session, organization_id, actor_id, "role.permissions.set", "role", role.id,
                old_value={"count": len(current_ids)}, new_value={"permissions": sorted(wanted)},
            )
            await session.commit()

        await self.cache.invalidate_all(organization_id)
        return sorted(wanted)

    # ------------------------------------------------------------------
    # User assignments
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        role_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> None:
        async with self.session_factory() as session:
            role = await self._require_role(CatalogStore(session), organization_id, role_key)
            if not role.is_active:
                raise ValidationException(
                    message=f"Role '{role_key}' is inactive",
                    details={"role_key": role_key},
                )

            assignments = AssignmentStore(session)
            if await assignments.get_assignment(organization_id, user_id, role.id):
                return
            await assignments.add_assignment(organization_id, user_id, role.id, assigned_by=actor_id)
            await self._audit(
                session, organization_id, actor_id, "user.role.assign", "user", user_id,
                new_value={"role": role_key},
            )
            await session.commit()

        logger.info(f"Assigned role {role_key} to user {user_id} in organization {organization_id}")
        await self.cache.invalidate(organization_id, user_id)

    async def remove_role(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        role_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> bool:
        async with self.session_factory() as session:
            role = await self._require_role(CatalogStore(session), organization_id, role_key)
            removed = await AssignmentStore(session).remove_assignment(organization_id, user_id, role.id)
            if removed:
                await self._audit(
                    session, organization_id, actor_id, "user.role.remove", "user", user_id,
                    old_value={"role": role_key},
                )
                await session.commit()

        if removed:
            logger.info(f"Removed role {role_key} from user {user_id} in organization {organization_id}")
            await self.cache.invalidate(organization_id, user_id)
        return removed

    async def count_users_with_role(self, organization_id: uuid.UUID, role_key: str) -> int:
        async with self.session_factory() as session:
            role = await self._require_role(CatalogStore(session), organization_id, role_key)
            return await AssignmentStore(session).count_users_with_role(organization_id, role.id)

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    async def set_override(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_key: str,
        is_granted: bool,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OverrideInfo:
        """
        Grant or revoke one permission for one user

        Replaces any existing override for the same permission.

        Raises:
            ValidationException: unknown permission key or expiry in the past
        """
        expires_at = ensure_utc(expires_at)
        if expires_at is not None and expires_at <= ensure_utc(self.clock()):
            raise ValidationException(
                message="expires_at must be in the future",
                details={"expires_at": expires_at.isoformat()},
            )

        try:
            override = await self._upsert_override(
                organization_id, user_id, permission_key, is_granted, expires_at, reason, actor_id
            )
        except IntegrityError:
            # A concurrent writer inserted the row first; ours is the later write
            logger.warning(f"Override for {permission_key}/{user_id} raced another write, retrying")
            override = await self._upsert_override(
                organization_id, user_id, permission_key, is_granted, expires_at, reason, actor_id
            )

        logger.info(
            f"{'Granted' if is_granted else 'Revoked'} {permission_key} for user {user_id} "
            f"in organization {organization_id}"
        )
        await self.cache.invalidate(organization_id, user_id)
        return override

    async def _upsert_override(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_key: str,
        is_granted: bool,
        expires_at: Optional[datetime],
        reason: Optional[str],
        actor_id: Optional[uuid.UUID],
    ) -> OverrideInfo:
        async with self.session_factory() as session:
            permission = await self._require_permission(CatalogStore(session), organization_id, permission_key)
            row = await OverrideStore(session).upsert_override(
                organization_id, user_id, permission.id, is_granted,
                expires_at=expires_at, reason=reason, granted_by=actor_id,
            )
            await self._audit(
                session, organization_id, actor_id,
                "override.grant" if is_granted else "override.revoke",
                "user", user_id,
                new_value={
                    "permission": permission_key,
                    "is_granted": is_granted,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                    "reason": reason,
                },
            )
            await session.commit()
            return OverrideInfo(
                organization_id=organization_id,
                user_id=user_id,
                permission_key=permission_key,
                is_granted=row.is_granted,
                expires_at=row.expires_at,
                updated_at=row.updated_at,
            )

    async def remove_override(
        self,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        permission_key: str,
        actor_id: Optional[uuid.UUID] = None,
    ) -> bool:
        async with self.session_factory() as session:
            permission = await self._require_permission(CatalogStore(session), organization_id, permission_key)
            removed = await OverrideStore(session).delete_override(organization_id, user_id, permission.id)
            if removed:
                await self._audit(
                    session, organization_id, actor_id, "override.remove", "user", user_id,
                    old_value={"permission": permission_key},
                )
                await session.commit()

        if removed:
            await self.cache.invalidate(organization_id, user_id)
        return removed

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def list_audit_logs(
        self,
        organization_id: uuid.UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> List[RBACAuditLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RBACAuditLog)
                .where(RBACAuditLog.organization_id == organization_id)
                .order_by(RBACAuditLog.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())
