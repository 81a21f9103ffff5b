"""
Sim Kernel — Canonical Hashing

SHA-256 over the canonical index encoding of a set of entries.
Identical entry sets hash identically regardless of input order, so the
value doubles as an HTTP ETag for aggregated snapshots.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from .domain_types import FolderEntry
from .index_codec import encode_index


def canonical_serialize(entries: Iterable[FolderEntry]) -> bytes:
    return encode_index(entries)


def snapshot_hash(entries: Iterable[FolderEntry]) -> str:
    """SHA-256 of canonical serialization. Lowercase hex string."""
    return hashlib.sha256(canonical_serialize(entries)).hexdigest()
