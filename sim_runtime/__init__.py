"""
Sim Runtime — I/O layer around the Sim Kernel.

Object store capability, live / precomputed-index aggregation sources,
snapshot cache with single-flight rebuilds, and the service facade.
"""

from .object_store import (
    ObjectStore,
    ObjectStoreError,
    ObjectNotFoundError,
    StorageError,
    FilesystemObjectStore,
    InMemoryObjectStore,
)
from .aggregator import (
    AggregationError,
    AggregationTimeoutError,
    IndexNotBuiltError,
    IndexCorruptError,
    AggregationSource,
    LiveSource,
    PrecomputedIndexSource,
    SourceResult,
    build_source,
    list_folders,
    load_folder_metadata,
)
from .cache import SnapshotCache, snapshot_cache_key
from .config import RuntimeSettings, load_settings
from .gametrees import GameTreeUpload, sanitize_segment, upload_game_tree
from .observability import AggregationMetrics
from .service import SimMetadataService

__all__ = [
    "ObjectStore",
    "ObjectStoreError",
    "ObjectNotFoundError",
    "StorageError",
    "FilesystemObjectStore",
    "InMemoryObjectStore",
    "AggregationError",
    "AggregationTimeoutError",
    "IndexNotBuiltError",
    "IndexCorruptError",
    "AggregationSource",
    "LiveSource",
    "PrecomputedIndexSource",
    "SourceResult",
    "build_source",
    "list_folders",
    "load_folder_metadata",
    "SnapshotCache",
    "snapshot_cache_key",
    "RuntimeSettings",
    "load_settings",
    "GameTreeUpload",
    "sanitize_segment",
    "upload_game_tree",
    "AggregationMetrics",
    "SimMetadataService",
]
