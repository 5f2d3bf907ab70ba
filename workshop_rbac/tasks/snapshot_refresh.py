"""
Snapshot refresh sweep
Background recomputation of permission snapshots, batch by batch
"""

import asyncio
import uuid
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import async_sessionmaker

from workshop_rbac.core.config import settings
from workshop_rbac.core.logging import get_logger
from workshop_rbac.db.models import UserPermissionOverride, UserRole
from workshop_rbac.services.rbac.snapshot import SnapshotCache

logger = get_logger(__name__)


class SweepResult(BaseModel):
    """Outcome of one sweep over an organization"""
    organization_id: uuid.UUID
    refreshed: int = 0
    skipped: int = 0
    completed: bool = False
    cursor: Optional[uuid.UUID] = None


class SnapshotRefreshSweeper:
    """
    Refreshes missing or stale snapshots for every user of an organization

    Users are visited in a stable order and the last finished user is kept
    as a cursor, so a sweep that was stopped or cancelled resumes where it
    left off. Refreshing is idempotent; re-visiting a user is harmless.
    """

    def __init__(
        self,
        cache: SnapshotCache,
        session_factory: async_sessionmaker,
        batch_size: Optional[int] = None,
    ):
        self.cache = cache
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.SNAPSHOT_SWEEP_BATCH_SIZE
        self.cursors: Dict[uuid.UUID, uuid.UUID] = {}
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Ask a running sweep to finish its current user and return"""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def list_organization_ids(self) -> List[uuid.UUID]:
        query = union(
            select(UserRole.organization_id),
            select(UserPermissionOverride.organization_id),
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return sorted(result.scalars().all(), key=str)

    async def list_user_ids(self, organization_id: uuid.UUID) -> List[uuid.UUID]:
        """Users with any role or override in the organization, in sweep order"""
        query = union(
            select(UserRole.user_id).where(UserRole.organization_id == organization_id),
            select(UserPermissionOverride.user_id).where(
                UserPermissionOverride.organization_id == organization_id
            ),
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return sorted(result.scalars().all(), key=str)

    async def sweep(self, organization_id: uuid.UUID, only_stale: bool = True) -> SweepResult:
        self._stop.clear()
        cursor = self.cursors.get(organization_id)
        result = SweepResult(organization_id=organization_id, cursor=cursor)

        user_ids = await self.list_user_ids(organization_id)
        if cursor is not None:
            user_ids = [user_id for user_id in user_ids if str(user_id) > str(cursor)]

        for start in range(0, len(user_ids), self.batch_size):
            for user_id in user_ids[start:start + self.batch_size]:
                if self.stopped:
                    logger.info(f"Sweep of {organization_id} stopped at cursor {result.cursor}")
                    return result

                if only_stale and await self.cache.read(organization_id, user_id) is not None:
                    result.skipped += 1
                else:
                    await self.cache.refresh(organization_id, user_id)
                    result.refreshed += 1

                result.cursor = user_id
                self.cursors[organization_id] = user_id

            # Yield between batches so cancellation and other requests get through
            await asyncio.sleep(0)

        self.cursors.pop(organization_id, None)
        result.completed = True
        result.cursor = None
        logger.info(
            f"Sweep of {organization_id} complete: {result.refreshed} refreshed, {result.skipped} fresh"
        )
        return result

    async def sweep_all(self, only_stale: bool = True) -> List[SweepResult]:
        results = []
        for organization_id in await self.list_organization_ids():
            if self.stopped:
                break
            results.append(await self.sweep(organization_id, only_stale=only_stale))
            if not results[-1].completed:
                break
        return results

    async def run_periodically(self, interval_seconds: float) -> None:
        """Sweep every organization until stopped or cancelled"""
        while not self.stopped:
            await self.sweep_all()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
