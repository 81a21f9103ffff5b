"""
Snapshot Cache — last aggregated snapshot per request shape.

  - One fixed TTL, counted from the snapshot's created_at (cache clock).
  - Expiry is checked lazily on read; no background eviction.
  - Entries are immutable; put() swaps the whole entry in one assignment,
    so readers never observe a half-written snapshot.
  - get_or_compute() collapses concurrent misses for the same key into a
    single in-flight computation shared by every waiter. Failures are not
    cached.

The clock is injected so tests can move time explicitly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sim_kernel.constants import SNAPSHOT_TTL_SECONDS
from sim_kernel.domain_types import AggregatedSnapshot

logger = logging.getLogger(__name__)


def snapshot_cache_key(source: str, include_missing: bool) -> str:
    return f"foldersWithMetadata:{source}:{str(include_missing).lower()}"


@dataclass(frozen=True)
class _CacheEntry:
    snapshot: AggregatedSnapshot
    expires_at: float


class SnapshotCache:
    """
    In-process snapshot cache. Construct once at startup and hand the
    same instance to every request handler.
    """

    def __init__(
        self,
        ttl_seconds: float = SNAPSHOT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Plain access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[AggregatedSnapshot]:
        entry = self._entries.get(key)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.snapshot

    def put(self, key: str, snapshot: AggregatedSnapshot) -> None:
        self._entries[key] = _CacheEntry(
            snapshot=snapshot,
            expires_at=snapshot.created_at + self._ttl,
        )

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    # ------------------------------------------------------------------
    # Single-flight
    # ------------------------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[AggregatedSnapshot]],
    ) -> Tuple[AggregatedSnapshot, bool]:
        """
        Return (snapshot, cache_hit). On a miss, join the in-flight
        computation for key or start one.
        """
        cached = self.get(key)
        if cached is not None:
            return cached, True

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute_and_store(key, compute))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"[SnapshotCache] Joining in-flight rebuild for {key}")

        # shield: one cancelled waiter must not cancel the shared rebuild
        return await asyncio.shield(task), False

    async def _compute_and_store(
        self,
        key: str,
        compute: Callable[[], Awaitable[AggregatedSnapshot]],
    ) -> AggregatedSnapshot:
        snapshot = await compute()
        self.put(key, snapshot)
        return snapshot

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the failure retrieved even when every waiter was cancelled.
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[SnapshotCache] Rebuild for {key} failed: {task.exception()!r}")
