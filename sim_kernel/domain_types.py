"""
Sim Kernel — Core Domain Types

Pure data plus its wire form. No I/O, no parsing heuristics.

────────────────────────────────────────────────
DOMAIN GLOSSARY
────────────────────────────────────────────────

Folder:
    Top-level partition of the backing store, optionally holding one
    metadata.json document.

ICM:
    Independent Chip Model payout structure. Only its shape matters here.

Snapshot:
    One immutable, fully ordered aggregation result.

────────────────────────────────────────────────
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ── Folder Identifier Validation ──────────────────────────────
_FORBIDDEN_FOLDER_CHARS = re.compile(r'[/\\\x00]')


def _validate_segment(value: str, kind: str) -> None:
    if not value or not value.strip():
        raise ValueError(f"{kind} name must not be empty")
    if _FORBIDDEN_FOLDER_CHARS.search(value) or value in (".", ".."):
        raise ValueError(f"Invalid {kind.lower()} name {value!r}")


def validate_folder_name(folder: str) -> None:
    """Reject identifiers that could escape the store root. Hard fail."""
    _validate_segment(folder, "Folder")


def validate_file_name(file_name: str) -> None:
    """Same rules as folders, applied to a file inside a folder."""
    _validate_segment(file_name, "File")


# ── Core Domain Types ─────────────────────────────────────────

@dataclass(frozen=True)
class NormalizedMetadata:
    """Canonical per-folder metadata record."""

    name: str
    ante: float = 0.0
    is_icm: bool = False
    icm_count: int = 0
    icm_payouts: Optional[Tuple[float, ...]] = None
    seats: int = 0                 # filled by the classifier
    tags: Tuple[str, ...] = ()     # filled by the classifier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ante": self.ante,
            "isIcm": self.is_icm,
            "icmCount": self.icm_count,
            "seats": self.seats,
            "tags": list(self.tags),
            "icmPayouts": list(self.icm_payouts) if self.icm_payouts is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NormalizedMetadata":
        """
        Rebuild a record from its wire form. Keys are matched
        case-insensitively; the record is trusted as already normalized.
        """
        d = _lower_keys(data)
        payouts = d.get("icmpayouts")
        return cls(
            name=str(d.get("name") or ""),
            ante=_finite(d.get("ante") or 0, "ante"),
            is_icm=bool(d.get("isicm", False)),
            icm_count=int(d.get("icmcount") or 0),
            icm_payouts=tuple(_finite(p, "icmPayouts") for p in payouts) if payouts is not None else None,
            seats=int(d.get("seats") or 0),
            tags=tuple(str(t) for t in (d.get("tags") or ())),
        )


@dataclass(frozen=True)
class FolderEntry:
    """Aggregation-level record for one folder."""

    folder: str
    has_metadata: bool
    metadata: Optional[NormalizedMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder": self.folder,
            "hasMetadata": self.has_metadata,
            "metadata": self.metadata.to_dict() if self.metadata is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FolderEntry":
        d = _lower_keys(data)
        if "folder" not in d:
            raise KeyError("folder")
        meta = d.get("metadata")
        return cls(
            folder=str(d["folder"]),
            has_metadata=bool(d.get("hasmetadata", meta is not None)),
            metadata=NormalizedMetadata.from_dict(meta) if meta is not None else None,
        )


@dataclass(frozen=True)
class AggregatedSnapshot:
    """
    Ordered aggregation result.

    created_at is a reading of the cache clock at the end of the pass,
    not a wall-clock timestamp. The counts describe that same pass.
    """

    entries: Tuple[FolderEntry, ...]
    created_at: float
    source: str = "live"           # live | index
    include_missing: bool = False
    folder_count: int = 0
    missing_count: int = 0
    failed_count: int = 0

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.entries]


# ── Ordering ──────────────────────────────────────────────────

def folder_sort_key(folder: str) -> Tuple[str, str]:
    """Case-insensitive order; original spelling breaks ties deterministically."""
    return (folder.casefold(), folder)


def sort_entries(entries) -> Tuple[FolderEntry, ...]:
    return tuple(sorted(entries, key=lambda e: folder_sort_key(e.folder)))


def _lower_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"Expected an object, got {type(data).__name__}")
    return {str(k).lower(): v for k, v in data.items()}


def _finite(value: Any, field_name: str) -> float:
    try:
        result = float(value)
    except OverflowError:
        raise ValueError(f"{field_name} out of range: {value!r}") from None
    if not math.isfinite(result):
        raise ValueError(f"{field_name} must be finite, got {value!r}")
    return result
