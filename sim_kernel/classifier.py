"""
Sim Kernel — Tag Classifier

Combines parsed metadata with name-derived features into the final tag set.

Rules (independent, unioned):
  HU   seats == 2
  FT   name contains "FT" (case-insensitive)
  ICM  metadata.is_icm

The FT rule is substring-only: an ICM payout structure on its own never
makes a sim a final table.

Tags are always emitted in the order HU, FT, ICM.
"""

from __future__ import annotations

import dataclasses
from typing import Tuple

from .constants import FINAL_TABLE_MARKER, HEADS_UP_SEATS, TAG_FT, TAG_HU, TAG_ICM, TAG_ORDER
from .domain_types import NormalizedMetadata
from .features import count_numeric_chunks


def is_final_table(metadata: NormalizedMetadata) -> bool:
    return FINAL_TABLE_MARKER in (metadata.name or "").casefold()


def derive_tags(metadata: NormalizedMetadata, seats: int) -> Tuple[str, ...]:
    fired = set()
    if seats == HEADS_UP_SEATS:
        fired.add(TAG_HU)
    if is_final_table(metadata):
        fired.add(TAG_FT)
    if metadata.is_icm:
        fired.add(TAG_ICM)
    return tuple(tag for tag in TAG_ORDER if tag in fired)


def classify(metadata: NormalizedMetadata, seats: int) -> NormalizedMetadata:
    """Return a copy of metadata with seats and tags filled in. Total."""
    return dataclasses.replace(
        metadata,
        seats=seats,
        tags=derive_tags(metadata, seats),
    )


def classify_folder(metadata: NormalizedMetadata, folder: str) -> NormalizedMetadata:
    """classify() with seats taken from the folder's naming convention."""
    return classify(metadata, count_numeric_chunks(folder))
