"""
Service wiring
Builds the resolver, cache, authorization and admin services from sessions
"""

from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from workshop_rbac.core.clock import Clock, utcnow
from workshop_rbac.core.logging import get_logger
from workshop_rbac.services.rbac.admin import RBACAdminService
from workshop_rbac.services.rbac.authorization import AuthorizationService
from workshop_rbac.services.rbac.resolver import PermissionResolver
from workshop_rbac.services.rbac.snapshot import SnapshotBackend, SnapshotCache

logger = get_logger(__name__)

# Global singleton instances
_authorization_service: Optional[AuthorizationService] = None
_admin_service: Optional[RBACAdminService] = None


def build_services(
    session_factory: async_sessionmaker,
    resolver_session_factory: Optional[async_sessionmaker] = None,
    backend: Optional[SnapshotBackend] = None,
    ttl_seconds: Optional[int] = None,
    clock: Clock = utcnow,
) -> Tuple[AuthorizationService, RBACAdminService]:
    """Wire one resolver and one cache shared by the check API and the admin path"""
    resolver = PermissionResolver(resolver_session_factory or session_factory, clock=clock)
    cache = SnapshotCache(resolver, backend=backend, ttl_seconds=ttl_seconds, clock=clock)
    return AuthorizationService(cache), RBACAdminService(session_factory, cache, clock=clock)


def _ensure_services() -> None:
    global _authorization_service, _admin_service
    if _authorization_service is not None:
        return

    import workshop_rbac.db.session as session_module

    if session_module.async_session_maker is None:
        raise RuntimeError("Database not initialized; call init_db() first")

    _authorization_service, _admin_service = build_services(
        session_module.async_session_maker,
        resolver_session_factory=session_module.resolver_session_maker,
    )
    logger.info(f"RBAC services initialized (cache backend: {_authorization_service.cache.backend.name})")


def get_authorization_service() -> AuthorizationService:
    """Get or create the global authorization service"""
    _ensure_services()
    return _authorization_service


def get_admin_service() -> RBACAdminService:
    """Get or create the global admin service"""
    _ensure_services()
    return _admin_service


async def shutdown_services() -> None:
    global _authorization_service, _admin_service
    if _authorization_service is not None:
        await _authorization_service.cache.close()
    _authorization_service = None
    _admin_service = None
