"""
Aggregator — folder universe -> ordered list of FolderEntry.

Two interchangeable sources, selected by configuration:

  LiveSource              enumerate folders, fetch + parse + classify each
                          one concurrently (bounded by a semaphore)
  PrecomputedIndexSource  read one prebuilt index document; entries are
                          trusted as already classified

Both apply the same inclusion policy and the same case-insensitive
ordering, and both run under an optional deadline. A deadline hit
cancels in-flight fetches and raises; no partial result is returned.

Failure policy (live):
  - metadata.json absent               -> has_metadata = False
  - StorageError after bounded retries -> logged, treated as absent
  - folder enumeration fails           -> propagated, whole pass fails
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, List, Optional, Tuple, Union

from sim_kernel.classifier import classify_folder
from sim_kernel.constants import DEFAULT_INDEX_NAME, METADATA_FILENAME
from sim_kernel.domain_types import FolderEntry, NormalizedMetadata, folder_sort_key, sort_entries
from sim_kernel.index_codec import IndexDecodeError, decode_index
from sim_kernel.metadata_parser import decode_metadata_document

from .object_store import ObjectNotFoundError, ObjectStore, StorageError

logger = logging.getLogger(__name__)

SOURCE_LIVE = "live"
SOURCE_INDEX = "index"

_DEFAULT_RETRIES = 3
_DEFAULT_BACKOFF_S = 0.05


# ══════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════

class AggregationError(Exception):
    """Base exception for a failed aggregation pass."""


class AggregationTimeoutError(AggregationError):
    """The pass did not finish before its deadline."""

    def __init__(self, source: str, timeout_s: float) -> None:
        self.source = source
        self.timeout_s = timeout_s
        super().__init__(f"{source} aggregation exceeded its {timeout_s:g}s deadline")


class IndexNotBuiltError(AggregationError):
    """The precomputed index does not exist yet. Rebuild it."""

    def __init__(self, index_name: str) -> None:
        self.index_name = index_name
        super().__init__(
            f"Precomputed index {index_name!r} has not been built; rebuild the index"
        )


class IndexCorruptError(AggregationError):
    """The precomputed index exists but cannot be decoded. Rebuild it."""

    def __init__(self, index_name: str, cause: Exception) -> None:
        self.index_name = index_name
        self.cause = cause
        super().__init__(f"Precomputed index {index_name!r} is corrupt: {cause}")


# ══════════════════════════════════════════════════════════════
# Results
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SourceResult:
    entries: Tuple[FolderEntry, ...]
    folder_count: int
    missing_count: int = 0
    failed_count: int = 0


# ══════════════════════════════════════════════════════════════
# Folder-level operations
# ══════════════════════════════════════════════════════════════

async def list_folders(store: ObjectStore) -> List[str]:
    """Top-level folders, deduplicated and ordered case-insensitively."""
    seen = {}
    for folder in sorted(await store.list_top_level_prefixes()):
        seen.setdefault(folder.casefold(), folder)
    return sorted(seen.values(), key=folder_sort_key)


async def fetch_with_retry(
    store: ObjectStore,
    path: str,
    retries: int = _DEFAULT_RETRIES,
    backoff_s: float = _DEFAULT_BACKOFF_S,
) -> bytes:
    """
    Fetch one object, retrying StorageError with exponential backoff.
    ObjectNotFoundError is never retried.
    """
    for attempt in range(retries + 1):
        try:
            return await store.fetch(path)
        except StorageError:
            if attempt == retries:
                raise
            await asyncio.sleep(backoff_s * (2 ** attempt))
    raise RuntimeError("fetch_with_retry: exhausted retries")


async def load_folder_metadata(
    store: ObjectStore,
    folder: str,
    retries: int = _DEFAULT_RETRIES,
    backoff_s: float = _DEFAULT_BACKOFF_S,
) -> Optional[NormalizedMetadata]:
    """
    Fetch, parse and classify one folder's metadata.json.
    Returns None when the document does not exist.
    """
    try:
        data = await fetch_with_retry(
            store, f"{folder}/{METADATA_FILENAME}", retries, backoff_s,
        )
    except ObjectNotFoundError:
        return None
    return classify_folder(decode_metadata_document(data, folder), folder)


async def _with_deadline(awaitable: Awaitable, source: str, timeout_s: Optional[float]):
    if not timeout_s:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise AggregationTimeoutError(source, timeout_s) from None


# ══════════════════════════════════════════════════════════════
# Strategy A — live fan-out
# ══════════════════════════════════════════════════════════════

class LiveSource:
    """Re-derives every entry from the store on each pass."""

    kind = SOURCE_LIVE

    def __init__(
        self,
        store: ObjectStore,
        max_concurrency: int = 16,
        retries: int = _DEFAULT_RETRIES,
        backoff_s: float = _DEFAULT_BACKOFF_S,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._store = store
        self._max_concurrency = max_concurrency
        self._retries = retries
        self._backoff_s = backoff_s

    async def aggregate(
        self, include_missing: bool, timeout_s: Optional[float] = None,
    ) -> SourceResult:
        return await _with_deadline(self._run(include_missing), self.kind, timeout_s)

    async def _run(self, include_missing: bool) -> SourceResult:
        folders = await list_folders(self._store)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _one(folder: str) -> Tuple[FolderEntry, bool]:
            async with semaphore:
                return await self._fetch_entry(folder)

        outcomes = await asyncio.gather(*(_one(f) for f in folders))

        entries: List[FolderEntry] = []
        missing = failed = 0
        for entry, fetch_failed in outcomes:
            failed += fetch_failed
            if entry.has_metadata:
                entries.append(entry)
                continue
            missing += 1
            if include_missing:
                entries.append(entry)

        return SourceResult(
            entries=sort_entries(entries),
            folder_count=len(folders),
            missing_count=missing,
            failed_count=failed,
        )

    async def _fetch_entry(self, folder: str) -> Tuple[FolderEntry, bool]:
        """(entry, fetch_failed). Storage failures degrade to "no metadata"."""
        try:
            meta = await load_folder_metadata(
                self._store, folder, self._retries, self._backoff_s,
            )
        except StorageError as exc:
            logger.warning(f"[Aggregator] Giving up on {folder!r}: {exc}")
            return FolderEntry(folder=folder, has_metadata=False), True

        if meta is None:
            return FolderEntry(folder=folder, has_metadata=False), False
        return FolderEntry(folder=folder, has_metadata=True, metadata=meta), False


# ══════════════════════════════════════════════════════════════
# Strategy B — precomputed index
# ══════════════════════════════════════════════════════════════

class PrecomputedIndexSource:
    """
    Serves entries from one prebuilt index document.

    The index may be stale; it is never re-classified and a missing or
    corrupt index never falls back to the live source.
    """

    kind = SOURCE_INDEX

    def __init__(
        self,
        store: ObjectStore,
        index_name: str = DEFAULT_INDEX_NAME,
        retries: int = _DEFAULT_RETRIES,
        backoff_s: float = _DEFAULT_BACKOFF_S,
    ) -> None:
        self._store = store
        self._index_name = index_name
        self._retries = retries
        self._backoff_s = backoff_s

    @property
    def index_name(self) -> str:
        return self._index_name

    async def aggregate(
        self, include_missing: bool, timeout_s: Optional[float] = None,
    ) -> SourceResult:
        return await _with_deadline(self._run(include_missing), self.kind, timeout_s)

    async def _run(self, include_missing: bool) -> SourceResult:
        if not await self._store.exists(self._index_name):
            raise IndexNotBuiltError(self._index_name)
        try:
            data = await fetch_with_retry(
                self._store, self._index_name, self._retries, self._backoff_s,
            )
        except ObjectNotFoundError:
            raise IndexNotBuiltError(self._index_name) from None

        try:
            decoded = decode_index(data)
        except IndexDecodeError as exc:
            raise IndexCorruptError(self._index_name, exc) from exc

        missing = sum(1 for e in decoded if not e.has_metadata)
        kept = decoded if include_missing else [e for e in decoded if e.has_metadata]
        return SourceResult(
            entries=sort_entries(kept),
            folder_count=len(decoded),
            missing_count=missing,
        )


AggregationSource = Union[LiveSource, PrecomputedIndexSource]


def build_source(
    kind: str,
    store: ObjectStore,
    max_concurrency: int = 16,
    index_name: str = DEFAULT_INDEX_NAME,
    retries: int = _DEFAULT_RETRIES,
) -> AggregationSource:
    if kind == SOURCE_LIVE:
        return LiveSource(store, max_concurrency=max_concurrency, retries=retries)
    if kind == SOURCE_INDEX:
        return PrecomputedIndexSource(store, index_name=index_name, retries=retries)
    raise ValueError(f"Unknown aggregation source {kind!r}. Valid: {[SOURCE_LIVE, SOURCE_INDEX]}")
