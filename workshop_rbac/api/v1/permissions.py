"""
Permission Check API Routes
Let clients ask what the current caller is allowed to do
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from workshop_rbac.api.dependencies import Principal, get_current_principal
from workshop_rbac.services.rbac.authorization import AuthorizationService
from workshop_rbac.services.rbac.factory import get_authorization_service

router = APIRouter()


class MyPermissionsResponse(BaseModel):
    """Resolved permissions of the caller"""
    user_id: str
    organization_id: str
    is_admin: bool
    roles: List[str]
    permissions: List[str]


class PermissionCheckResponse(BaseModel):
    permission: str
    has_permission: bool


class CheckAnyRequest(BaseModel):
    permissions: List[str] = Field(..., min_length=1, description="Permission keys to test")


class CheckAnyResponse(BaseModel):
    has_any_permission: bool


@router.get("/me", response_model=MyPermissionsResponse)
async def get_my_permissions(
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    """Roles and effective permissions of the caller"""
    snapshot = await authz.get_snapshot(principal.user_id, principal.organization_id)
    return MyPermissionsResponse(
        user_id=str(principal.user_id),
        organization_id=str(principal.organization_id),
        is_admin=snapshot.is_admin,
        roles=sorted(snapshot.role_keys),
        permissions=sorted(snapshot.permissions),
    )


@router.get("/check", response_model=PermissionCheckResponse)
async def check_permission(
    permission: str = Query(..., min_length=1),
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    allowed = await authz.has_permission(principal.user_id, principal.organization_id, permission)
    return PermissionCheckResponse(permission=permission, has_permission=allowed)


@router.post("/check-any", response_model=CheckAnyResponse)
async def check_any_permission(
    request: CheckAnyRequest,
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service),
):
    allowed = await authz.has_any_permission(
        principal.user_id, principal.organization_id, request.permissions
    )
    return CheckAnyResponse(has_any_permission=allowed)
