"""
Permission resolution engine

Usage:
    ```python
    from workshop_rbac.services.rbac import get_authorization_service

    authz = get_authorization_service()
    if await authz.has_permission(user_id, organization_id, "invoices.view"):
        ...
    ```
"""

from workshop_rbac.services.rbac.admin import RBACAdminService
from workshop_rbac.services.rbac.assignments import AssignmentStore
from workshop_rbac.services.rbac.authorization import AuthorizationService
from workshop_rbac.services.rbac.catalog import CatalogStore
from workshop_rbac.services.rbac.factory import (
    build_services,
    get_admin_service,
    get_authorization_service,
    shutdown_services,
)
from workshop_rbac.services.rbac.overrides import OverrideStore
from workshop_rbac.services.rbac.resolver import PermissionResolver, resolve_snapshot
from workshop_rbac.services.rbac.snapshot import (
    InMemorySnapshotBackend,
    RedisSnapshotBackend,
    SnapshotBackend,
    SnapshotCache,
)

__all__ = [
    # Stores
    "AssignmentStore",
    "CatalogStore",
    "OverrideStore",
    # Engine and cache
    "PermissionResolver",
    "resolve_snapshot",
    "SnapshotBackend",
    "InMemorySnapshotBackend",
    "RedisSnapshotBackend",
    "SnapshotCache",
    # Services
    "AuthorizationService",
    "RBACAdminService",
    "build_services",
    "get_admin_service",
    "get_authorization_service",
    "shutdown_services",
]
