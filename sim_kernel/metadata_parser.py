"""
Sim Kernel — Metadata Parser

Schema-tolerant decode of one folder's metadata.json into
NormalizedMetadata. Every "forgiveness" rule lives in this module.

Rules:
  - name:  non-empty string, else the folder identifier.
  - ante:  number or numeric string, else 0. Booleans, non-finite and
           out-of-range values count as unparsable.
  - icm:   array    -> count = length, payouts = numeric entries in order
           "none"   -> not ICM (any case)
           anything else / absent -> not ICM
  - seats and tags are left empty; the classifier owns them.

Never raises on document content.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from .constants import FIELD_ANTE, FIELD_ICM, FIELD_NAME, ICM_NONE_SENTINEL
from .domain_types import NormalizedMetadata

logger = logging.getLogger(__name__)


def parse_metadata(raw: Any, folder: str) -> NormalizedMetadata:
    """Normalize a decoded document. Non-object input yields all defaults."""
    doc = raw if isinstance(raw, dict) else {}

    is_icm, icm_count, icm_payouts = _parse_icm(doc.get(FIELD_ICM))
    return NormalizedMetadata(
        name=_parse_name(doc.get(FIELD_NAME), folder),
        ante=_parse_number(doc.get(FIELD_ANTE)) or 0.0,
        is_icm=is_icm,
        icm_count=icm_count,
        icm_payouts=icm_payouts,
    )


def decode_metadata_document(data: bytes, folder: str) -> NormalizedMetadata:
    """
    Decode raw document bytes and parse them.

    Undecodable bytes, invalid JSON and non-object roots degrade to the
    all-defaults record instead of failing the folder.
    """
    try:
        raw = json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        logger.warning(f"[MetadataParser] Unreadable metadata for {folder!r}: {exc}")
        return parse_metadata({}, folder)

    if not isinstance(raw, dict):
        logger.warning(
            f"[MetadataParser] Metadata root for {folder!r} is "
            f"{type(raw).__name__}, expected object"
        )
    return parse_metadata(raw, folder)


def to_document(metadata: NormalizedMetadata) -> Dict[str, Any]:
    """
    Re-encode a record into the raw document shape.

    parse_metadata(to_document(m), folder) reproduces m (minus seats/tags)
    whenever every ICM entry of the source was numeric.
    """
    icm: Any = ICM_NONE_SENTINEL
    if metadata.icm_payouts is not None:
        icm = list(metadata.icm_payouts)
    return {
        FIELD_NAME: metadata.name,
        FIELD_ANTE: metadata.ante,
        FIELD_ICM: icm,
    }


# ── Field decoders ─────────────────────────────────────────────

def _parse_name(value: Any, folder: str) -> str:
    if isinstance(value, str) and value:
        return value
    return folder


def _finite_float(value: Any) -> Optional[float]:
    """JSON number as a finite float. Ints beyond float range give None."""
    try:
        result = float(value)
    except OverflowError:
        return None
    return result if math.isfinite(result) else None


def _parse_number(value: Any) -> Optional[float]:
    """Number or numeric-looking string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite_float(value)
    if isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
        return result if math.isfinite(result) else None
    return None


def _parse_icm(value: Any) -> Tuple[bool, int, Optional[Tuple[float, ...]]]:
    if isinstance(value, list):
        count = len(value)
        payouts: List[float] = []
        for entry in value:
            # Strings are not payouts, even numeric ones.
            if isinstance(entry, bool) or not isinstance(entry, (int, float)):
                continue
            payout = _finite_float(entry)
            if payout is not None:
                payouts.append(payout)
        return count > 0, count, tuple(payouts)

    # The "none" sentinel, absence and every other shape all mean "not ICM".
    return False, 0, None
