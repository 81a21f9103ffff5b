"""
Sim Kernel — Precomputed Index Encoder / Decoder

The precomputed index is a single JSON array of FolderEntry objects,
written by the index builder and read back as a fast path instead of the
per-folder fan-out.

Rules:
  - Entries encoded in case-insensitive folder order.
  - Compact separators, UTF-8, no trailing whitespace.
  - Keys read case-insensitively.
  - Entries are trusted as pre-classified: no parsing or tagging on read.
"""

from __future__ import annotations

import json
from typing import Iterable, List

from .domain_types import FolderEntry, sort_entries


# ══════════════════════════════════════════════════════════════
# Exception Hierarchy
# ══════════════════════════════════════════════════════════════

class IndexCodecError(Exception):
    """Base exception for all index codec operations."""


class IndexEncodeError(IndexCodecError):
    """Raised when encoding entries to JSON fails."""


class IndexDecodeError(IndexCodecError):
    """Raised when index bytes cannot be turned back into entries."""


# ══════════════════════════════════════════════════════════════
# Encoder
# ══════════════════════════════════════════════════════════════

def encode_index(entries: Iterable[FolderEntry]) -> bytes:
    """Serialize entries into the canonical index document."""
    try:
        payload = [e.to_dict() for e in sort_entries(entries)]
        return json.dumps(
            payload,
            ensure_ascii=False,
            separators=(",", ":"),
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise IndexEncodeError(f"Failed to encode index: {exc}") from exc


# ══════════════════════════════════════════════════════════════
# Decoder
# ══════════════════════════════════════════════════════════════

def decode_index(data: bytes) -> List[FolderEntry]:
    """
    Parse an index document.

    Raises IndexDecodeError on invalid JSON, a non-array root, or any
    entry that is not an object with a folder field.
    """
    try:
        raw = json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise IndexDecodeError(f"Index is not valid JSON: {exc}") from exc

    if not isinstance(raw, list):
        raise IndexDecodeError(
            f"Index root must be an array, got {type(raw).__name__}"
        )

    entries: List[FolderEntry] = []
    for i, item in enumerate(raw):
        try:
            entries.append(FolderEntry.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise IndexDecodeError(f"Invalid index entry at position {i}: {exc!r}") from exc
    return entries
