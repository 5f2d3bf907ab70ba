"""
Snapshot Cache
Per-user materialized permission resolutions with explicit invalidation

Every snapshot is stamped with a version built from three counters: a
global epoch, the organization generation and the user version. Bumping
any of them makes existing snapshots unreadable, so invalidation is O(1)
regardless of how many users it fans out to, and a refresh that raced an
invalidation publishes a snapshot nobody will ever read.
"""

import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from workshop_rbac.core.clock import Clock, utcnow
from workshop_rbac.core.config import settings
from workshop_rbac.core.exceptions import CacheUnavailableException
from workshop_rbac.core.logging import get_logger
from workshop_rbac.models.rbac import PermissionSnapshot
from workshop_rbac.monitoring.metrics import snapshot_cache_events_total, snapshot_invalidations_total
from workshop_rbac.services.rbac.resolver import PermissionResolver

logger = get_logger(__name__)

EPOCH_COUNTER = "epoch"


def snapshot_key(organization_id: uuid.UUID, user_id: uuid.UUID) -> str:
    return f"{organization_id}:{user_id}"


def generation_counter(organization_id: uuid.UUID) -> str:
    return f"gen:{organization_id}"


def user_counter(organization_id: uuid.UUID, user_id: uuid.UUID) -> str:
    return f"ver:{organization_id}:{user_id}"


class SnapshotBackend(ABC):
    """Storage for snapshots and version counters"""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[PermissionSnapshot]:
        ...

    @abstractmethod
    async def set(self, key: str, snapshot: PermissionSnapshot, ttl: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> int:
        ...

    @abstractmethod
    async def get_counters(self, names: Sequence[str]) -> List[int]:
        ...

    @abstractmethod
    async def incr_counter(self, name: str) -> int:
        ...

    async def close(self) -> None:
        return None


class InMemorySnapshotBackend(SnapshotBackend):
    """
    Process-local backend

    Entries are immutable and replaced whole; none of the operations yields
    to the event loop, so readers never see a half-written entry and need
    no lock.
    """

    name = "memory"

    def __init__(self):
        self._entries: Dict[str, Tuple[PermissionSnapshot, float]] = {}
        self._counters: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[PermissionSnapshot]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        snapshot, expiry = entry
        if time.monotonic() >= expiry:
            self._entries.pop(key, None)
            return None
        return snapshot

    async def set(self, key: str, snapshot: PermissionSnapshot, ttl: int) -> None:
        self._entries[key] = (snapshot, time.monotonic() + ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    async def get_counters(self, names: Sequence[str]) -> List[int]:
        return [self._counters.get(name, 0) for name in names]

    async def incr_counter(self, name: str) -> int:
        value = self._counters.get(name, 0) + 1
        self._counters[name] = value
        return value

    def __len__(self) -> int:
        return len(self._entries)


class RedisSnapshotBackend(SnapshotBackend):
    """Shared backend so that API workers and the sweeper see the same snapshots"""

    name = "redis"

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None, client=None):
        from redis.asyncio import Redis

        self.key_prefix = key_prefix or settings.SNAPSHOT_KEY_PREFIX
        self._client = client or Redis.from_url(
            redis_url or settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _unavailable(self, operation: str, error: Exception) -> CacheUnavailableException:
        return CacheUnavailableException(
            message=f"Redis {operation} failed",
            backend=self.name,
            details={"error": str(error)},
        )

    async def get(self, key: str) -> Optional[PermissionSnapshot]:
        from redis.exceptions import RedisError

        try:
            data = await self._client.get(self._key(f"data:{key}"))
        except (RedisError, OSError) as e:
            raise self._unavailable("GET", e) from e

        if data is None:
            return None
        try:
            return PermissionSnapshot.model_validate_json(data)
        except ValidationError:
            logger.warning(f"Discarding unreadable snapshot {key}")
            return None

    async def set(self, key: str, snapshot: PermissionSnapshot, ttl: int) -> None:
        from redis.exceptions import RedisError

        try:
            await self._client.set(self._key(f"data:{key}"), snapshot.model_dump_json(), ex=ttl)
        except (RedisError, OSError) as e:
            raise self._unavailable("SET", e) from e

    async def delete(self, key: str) -> bool:
        from redis.exceptions import RedisError

        try:
            return bool(await self._client.delete(self._key(f"data:{key}")))
        except (RedisError, OSError) as e:
            raise self._unavailable("DELETE", e) from e

    async def clear(self) -> int:
        from redis.exceptions import RedisError

        count = 0
        try:
            async for key in self._client.scan_iter(match=self._key("data:*"), count=500):
                count += await self._client.delete(key)
        except (RedisError, OSError) as e:
            raise self._unavailable("SCAN", e) from e
        return count

    async def get_counters(self, names: Sequence[str]) -> List[int]:
        from redis.exceptions import RedisError

        try:
            values = await self._client.mget([self._key(name) for name in names])
        except (RedisError, OSError) as e:
            raise self._unavailable("MGET", e) from e
        return [int(value) if value is not None else 0 for value in values]

    async def incr_counter(self, name: str) -> int:
        from redis.exceptions import RedisError

        try:
            return int(await self._client.incr(self._key(name)))
        except (RedisError, OSError) as e:
            raise self._unavailable("INCR", e) from e

    async def close(self) -> None:
        await self._client.aclose()


def create_backend(kind: Optional[str] = None) -> SnapshotBackend:
    """Build the backend selected by SNAPSHOT_CACHE_BACKEND"""
    kind = (kind or settings.SNAPSHOT_CACHE_BACKEND).lower()
    if kind == "redis":
        return RedisSnapshotBackend()
    return InMemorySnapshotBackend()


class SnapshotCache:
    """
    Read-through cache in front of the resolver

    Safe to use before anything has been cached: every operation works on an
    empty or unreachable backend. Backend failures degrade to direct
    resolution and are never turned into a grant.
    """

    def __init__(
        self,
        resolver: PermissionResolver,
        backend: Optional[SnapshotBackend] = None,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self.resolver = resolver
        self.backend = backend or create_backend()
        self.ttl_seconds = ttl_seconds or settings.SNAPSHOT_TTL_SECONDS
        self.clock = clock or resolver.clock or utcnow

    async def _current_version(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> str:
        counters = await self.backend.get_counters([
            EPOCH_COUNTER,
            generation_counter(organization_id),
            user_counter(organization_id, user_id),
        ])
        return ":".join(str(value) for value in counters)

    async def read(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> Optional[PermissionSnapshot]:
        """Return a usable snapshot, or None on miss, staleness or backend failure"""
        key = snapshot_key(organization_id, user_id)
        try:
            snapshot = await self.backend.get(key)
            if snapshot is None:
                snapshot_cache_events_total.labels(event="miss").inc()
                return None
            version = await self._current_version(organization_id, user_id)
        except CacheUnavailableException as e:
            logger.warning(f"Snapshot cache read failed for {key}: {e.message}")
            snapshot_cache_events_total.labels(event="error").inc()
            return None

        if snapshot.cache_version != version:
            snapshot_cache_events_total.labels(event="stale").inc()
            return None
        if not snapshot.is_current(self.clock()):
            snapshot_cache_events_total.labels(event="expired").inc()
            return None

        snapshot_cache_events_total.labels(event="hit").inc()
        return snapshot

    async def refresh(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> PermissionSnapshot:
        """
        Recompute and replace the user's snapshot

        Idempotent. Concurrent refreshes for the same user are last-writer-wins
        on a whole immutable entry.
        """
        key = snapshot_key(organization_id, user_id)
        try:
            # Captured before resolving: a write that lands meanwhile bumps the
            # counter and the result below becomes unreadable
            version = await self._current_version(organization_id, user_id)
        except CacheUnavailableException as e:
            logger.warning(f"Snapshot cache unavailable, resolving {key} without caching: {e.message}")
            snapshot_cache_events_total.labels(event="error").inc()
            version = None

        snapshot = await self.resolver.resolve(organization_id, user_id, now=self.clock())
        if version is None:
            return snapshot

        snapshot = snapshot.model_copy(update={"cache_version": version})
        try:
            await self.backend.set(key, snapshot, self.ttl_seconds)
            snapshot_cache_events_total.labels(event="refresh").inc()
        except CacheUnavailableException as e:
            logger.warning(f"Snapshot cache write failed for {key}: {e.message}")
            snapshot_cache_events_total.labels(event="error").inc()
        return snapshot

    async def get_or_refresh(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> PermissionSnapshot:
        snapshot = await self.read(organization_id, user_id)
        if snapshot is None:
            snapshot = await self.refresh(organization_id, user_id)
        return snapshot

    async def invalidate(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Force recomputation of one user's snapshot on next read"""
        key = snapshot_key(organization_id, user_id)
        try:
            await self.backend.incr_counter(user_counter(organization_id, user_id))
            await self.backend.delete(key)
        except CacheUnavailableException as e:
            logger.error(f"Failed to invalidate snapshot {key}: {e.message}")
            return False

        snapshot_invalidations_total.labels(scope="user").inc()
        logger.debug(f"Invalidated snapshot {key}")
        return True

    async def invalidate_all(self, organization_id: Optional[uuid.UUID] = None) -> bool:
        """
        Force recomputation for every user of an organization, or of all
        organizations when none is given

        Lazy: nothing is recomputed here; each snapshot is rebuilt on its next
        read.
        """
        try:
            if organization_id is None:
                await self.backend.incr_counter(EPOCH_COUNTER)
                cleared = await self.backend.clear()
                logger.info(f"Invalidated all snapshots ({cleared} dropped)")
            else:
                await self.backend.incr_counter(generation_counter(organization_id))
                logger.info(f"Invalidated snapshots for organization {organization_id}")
        except CacheUnavailableException as e:
            logger.error(f"Failed to invalidate snapshots: {e.message}")
            return False

        snapshot_invalidations_total.labels(scope="global" if organization_id is None else "organization").inc()
        return True

    async def close(self) -> None:
        await self.backend.close()
