"""
Sim Metadata Service — the core's output surface.

Orchestrates store + aggregation source + snapshot cache:

  list_folders()                    -> ordered folder identifiers
  get_folder_metadata(folder)       -> NormalizedMetadata | None
  get_aggregated_snapshot(missing)  -> AggregatedSnapshot (cache first)

Plus the raw-file, .rng, upload and index-rebuild operations used by the
HTTP layer. One instance per process; it owns no global state.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sim_kernel.domain_types import (
    AggregatedSnapshot,
    NormalizedMetadata,
    validate_file_name,
    validate_folder_name,
)
from sim_kernel.index_codec import encode_index
from sim_kernel.rng_parser import HandStrategy, parse_rng_text

from .aggregator import (
    AggregationSource,
    LiveSource,
    build_source,
    fetch_with_retry,
    list_folders,
    load_folder_metadata,
)
from .cache import SnapshotCache, snapshot_cache_key
from .config import RuntimeSettings
from .gametrees import GameTreeUpload, upload_game_tree
from .object_store import ObjectStore
from .observability import AggregationMetrics, elapsed_ms

logger = logging.getLogger(__name__)


class SimMetadataService:

    def __init__(
        self,
        store: ObjectStore,
        source: AggregationSource,
        cache: SnapshotCache,
        timeout_s: Optional[float] = None,
        retries: int = 3,
        index_name: Optional[str] = None,
        max_concurrency: int = 16,
    ) -> None:
        self._store = store
        self._source = source
        self._cache = cache
        self._timeout_s = timeout_s
        self._retries = retries
        self._index_name = index_name or getattr(source, "index_name", None)
        self._max_concurrency = max_concurrency
        self._last_metrics: Optional[AggregationMetrics] = None

    @classmethod
    def from_settings(
        cls,
        store: ObjectStore,
        settings: RuntimeSettings,
        cache: Optional[SnapshotCache] = None,
    ) -> "SimMetadataService":
        source = build_source(
            settings.aggregation_source,
            store,
            max_concurrency=settings.max_concurrency,
            index_name=settings.index_name,
            retries=settings.fetch_retries,
        )
        return cls(
            store=store,
            source=source,
            cache=cache or SnapshotCache(ttl_seconds=settings.snapshot_ttl_s),
            timeout_s=settings.aggregation_timeout_s or None,
            retries=settings.fetch_retries,
            index_name=settings.index_name,
            max_concurrency=settings.max_concurrency,
        )

    @property
    def source_kind(self) -> str:
        return self._source.kind

    @property
    def last_metrics(self) -> Optional[AggregationMetrics]:
        return self._last_metrics

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def list_folders(self) -> List[str]:
        return await list_folders(self._store)

    async def get_folder_metadata(self, folder: str) -> Optional[NormalizedMetadata]:
        validate_folder_name(folder)
        return await load_folder_metadata(self._store, folder, self._retries)

    # ------------------------------------------------------------------
    # Aggregated snapshot
    # ------------------------------------------------------------------

    async def get_aggregated_snapshot(self, include_missing: bool = False) -> AggregatedSnapshot:
        key = snapshot_cache_key(self._source.kind, include_missing)
        start = self._cache.now()

        async def _compute() -> AggregatedSnapshot:
            result = await self._source.aggregate(include_missing, self._timeout_s)
            return AggregatedSnapshot(
                entries=result.entries,
                created_at=self._cache.now(),
                source=self._source.kind,
                include_missing=include_missing,
                folder_count=result.folder_count,
                missing_count=result.missing_count,
                failed_count=result.failed_count,
            )

        snapshot, hit = await self._cache.get_or_compute(key, _compute)

        metrics = AggregationMetrics(
            source=self._source.kind,
            include_missing=include_missing,
            latency_ms=elapsed_ms(start, self._cache.now()),
            folder_count=snapshot.folder_count,
            entry_count=len(snapshot.entries),
            missing_count=snapshot.missing_count,
            failed_count=snapshot.failed_count,
            cache_hit=hit,
        )
        self._last_metrics = metrics
        if not hit:
            logger.info(f"[SimMetadataService] Aggregation pass: {metrics.to_dict()}")
        return snapshot

    async def rebuild_index(self) -> int:
        """
        Run a full live pass (missing folders included), write the index
        document and drop cached snapshots. Returns the entry count.
        """
        if not self._index_name:
            raise ValueError("No index name configured")
        live = self._source if isinstance(self._source, LiveSource) else LiveSource(
            self._store, max_concurrency=self._max_concurrency, retries=self._retries,
        )
        result = await live.aggregate(include_missing=True, timeout_s=self._timeout_s)
        await self._store.put(self._index_name, encode_index(result.entries))
        self._cache.invalidate()
        logger.info(
            f"[SimMetadataService] Rebuilt index {self._index_name!r}: "
            f"{len(result.entries)} entries, {result.failed_count} failed"
        )
        return len(result.entries)

    # ------------------------------------------------------------------
    # Raw files
    # ------------------------------------------------------------------

    async def list_folder_files(self, folder: str) -> List[str]:
        validate_folder_name(folder)
        return await self._store.list_files(folder)

    async def read_file(self, folder: str, file_name: str) -> str:
        validate_folder_name(folder)
        validate_file_name(file_name)
        data = await fetch_with_retry(self._store, f"{folder}/{file_name}", self._retries)
        return data.decode("utf-8", errors="replace")

    async def parse_rng_file(self, folder: str, file_name: str) -> Dict[str, HandStrategy]:
        return parse_rng_text(await self.read_file(folder, file_name))

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload_game_tree(self, req: GameTreeUpload) -> str:
        return await upload_game_tree(self._store, req)

