"""
Snapshot Tasks
Celery entry points for the snapshot refresh sweep
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional

from celery.exceptions import SoftTimeLimitExceeded

from workshop_rbac.core.logging import get_logger
from workshop_rbac.tasks.celery_app import celery_app

logger = get_logger(__name__)


async def _run_sweep(organization_id: Optional[str], only_stale: bool) -> List[Dict[str, Any]]:
    import workshop_rbac.db.session as session_module
    from workshop_rbac.services.rbac.factory import get_authorization_service, shutdown_services
    from workshop_rbac.tasks.snapshot_refresh import SnapshotRefreshSweeper

    # Each task runs in a fresh event loop, so connections are opened and
    # closed per run
    await session_module.init_db(create_tables=False)
    try:
        cache = get_authorization_service().cache
        if cache.backend.name == "memory":
            logger.warning("Snapshot sweep running against a process-local cache; results stay in the worker")

        sweeper = SnapshotRefreshSweeper(cache, session_module.async_session_maker)
        if organization_id:
            results = [await sweeper.sweep(uuid.UUID(organization_id), only_stale=only_stale)]
        else:
            results = await sweeper.sweep_all(only_stale=only_stale)
    finally:
        await shutdown_services()
        await session_module.close_db()
    return [result.model_dump(mode="json") for result in results]


@celery_app.task(bind=True)
def refresh_permission_snapshots(
    self,
    organization_id: Optional[str] = None,
    only_stale: bool = True,
) -> Dict[str, Any]:
    """Refresh permission snapshots for one organization, or for all of them"""
    logger.info(f"Refreshing permission snapshots (organization={organization_id or 'all'})")
    try:
        results = asyncio.run(_run_sweep(organization_id, only_stale))
    except SoftTimeLimitExceeded:
        # The sweep is idempotent; the next run starts over
        logger.warning("Snapshot sweep hit the soft time limit")
        return {"status": "partial", "results": []}
    return {"status": "completed", "results": results}
