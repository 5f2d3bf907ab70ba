"""
RBAC Pydantic Models
Immutable records exchanged between the stores, the resolver and the cache
"""

import uuid
from datetime import datetime
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from workshop_rbac.core.clock import ensure_utc


class PermissionInfo(BaseModel):
    """Catalog permission"""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    key: str = Field(..., description="Permission key, e.g. work_orders.view")
    resource: str
    action: str
    is_active: bool = True


class RoleInfo(BaseModel):
    """Catalog role"""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    key: str
    name: str
    is_system_role: bool = False
    is_active: bool = True


class OverrideInfo(BaseModel):
    """User-specific grant or revoke of one permission"""

    model_config = ConfigDict(frozen=True)

    organization_id: uuid.UUID
    user_id: uuid.UUID
    permission_key: str
    is_granted: bool
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        """An override is inert from its expiry instant onwards"""
        expires_at = ensure_utc(self.expires_at)
        return expires_at is None or ensure_utc(now) < expires_at


class PermissionSnapshot(BaseModel):
    """
    Materialized permission resolution for one user

    Derived data only; it can be dropped and rebuilt from the stores at any
    time. ``valid_until`` is the earliest expiry among the overrides that
    contributed to it, after which the snapshot must be recomputed.
    """

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    organization_id: uuid.UUID
    is_admin: bool = False
    role_keys: FrozenSet[str] = frozenset()
    role_permissions: FrozenSet[str] = frozenset()
    granted_overrides: FrozenSet[str] = frozenset()
    revoked_overrides: FrozenSet[str] = frozenset()
    computed_at: datetime
    valid_until: Optional[datetime] = None
    cache_version: Optional[str] = None

    @field_serializer("role_keys", "role_permissions", "granted_overrides", "revoked_overrides")
    def _serialize_keys(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)

    @property
    def permissions(self) -> FrozenSet[str]:
        """Effective permission keys: revocation dominates grant"""
        return frozenset((self.role_permissions | self.granted_overrides) - self.revoked_overrides)

    def has(self, permission_key: str) -> bool:
        return self.is_admin or permission_key in self.permissions

    def is_current(self, now: datetime) -> bool:
        valid_until = ensure_utc(self.valid_until)
        return valid_until is None or ensure_utc(now) < valid_until
