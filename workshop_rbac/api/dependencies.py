"""
API Dependencies
Tenant resolution and permission guards for routes
"""

import uuid
from typing import Callable, Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from workshop_rbac.core.exceptions import AuthenticationException, AuthorizationException
from workshop_rbac.core.security import verify_access_token
from workshop_rbac.services.rbac.authorization import AuthorizationService
from workshop_rbac.services.rbac.factory import get_authorization_service


class Principal(BaseModel):
    """Authenticated caller and the organization the request is scoped to"""
    user_id: uuid.UUID
    organization_id: uuid.UUID


async def get_current_principal(
    authorization: Optional[str] = Header(None),
) -> Principal:
    """
    Dependency to get the caller from a bearer JWT

    The token must carry ``sub`` (user id) and ``org_id`` claims.

    Raises:
        AuthenticationException: If the token is missing, invalid or lacks claims
    """
    if not authorization:
        raise AuthenticationException(message="Missing authorization header")

    if not authorization.startswith("Bearer "):
        raise AuthenticationException(message="Invalid authorization header format")

    payload = verify_access_token(authorization.split(" ", 1)[1])

    try:
        return Principal(user_id=payload["sub"], organization_id=payload["org_id"])
    except (KeyError, ValueError) as e:
        raise AuthenticationException(
            message="Token is missing user or organization",
            details={"error": str(e)},
        )


def require_permission(permission_key: str, fresh: bool = False) -> Callable:
    """
    Route guard

    Usage:
        @router.delete("/invoices/{invoice_id}")
        async def delete_invoice(
            principal: Principal = Depends(require_permission("invoices.delete", fresh=True)),
        ):
            ...
    """

    async def dependency(
        principal: Principal = Depends(get_current_principal),
        authz: AuthorizationService = Depends(get_authorization_service),
    ) -> Principal:
        if not await authz.has_permission(
            principal.user_id, principal.organization_id, permission_key, fresh=fresh
        ):
            raise AuthorizationException(
                message=f"Access denied: Missing '{permission_key}' permission",
                details={"required_permission": permission_key},
            )
        return principal

    return dependency
