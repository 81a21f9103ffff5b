"""
Sim Kernel
Pure metadata normalization and tagging core for solver-output folders.
No I/O: every function here is a deterministic transform of its inputs.
"""

from .domain_types import (
    NormalizedMetadata, FolderEntry, AggregatedSnapshot,
    folder_sort_key, sort_entries, validate_file_name, validate_folder_name,
)
from .metadata_parser import parse_metadata, decode_metadata_document, to_document
from .features import count_numeric_chunks
from .classifier import classify, classify_folder, derive_tags, is_final_table
from .index_codec import (
    IndexCodecError,
    IndexEncodeError,
    IndexDecodeError,
    encode_index,
    decode_index,
)
from .hashing import canonical_serialize, snapshot_hash
from .rng_parser import HandStrategy, parse_rng_text
from .constants import (
    METADATA_FILENAME,
    DEFAULT_INDEX_NAME,
    SNAPSHOT_TTL_SECONDS,
    TAG_HU,
    TAG_FT,
    TAG_ICM,
    TAG_ORDER,
)

__all__ = [
    "NormalizedMetadata",
    "FolderEntry",
    "AggregatedSnapshot",
    "folder_sort_key",
    "sort_entries",
    "validate_file_name",
    "validate_folder_name",
    "parse_metadata",
    "decode_metadata_document",
    "to_document",
    "count_numeric_chunks",
    "classify",
    "classify_folder",
    "derive_tags",
    "is_final_table",
    "IndexCodecError",
    "IndexEncodeError",
    "IndexDecodeError",
    "encode_index",
    "decode_index",
    "canonical_serialize",
    "snapshot_hash",
    "HandStrategy",
    "parse_rng_text",
    "METADATA_FILENAME",
    "DEFAULT_INDEX_NAME",
    "SNAPSHOT_TTL_SECONDS",
    "TAG_HU",
    "TAG_FT",
    "TAG_ICM",
    "TAG_ORDER",
]
