"""
Pydantic models shared across the package
"""

from workshop_rbac.models.rbac import OverrideInfo, PermissionInfo, PermissionSnapshot, RoleInfo

__all__ = [
    "OverrideInfo",
    "PermissionInfo",
    "PermissionSnapshot",
    "RoleInfo",
]
