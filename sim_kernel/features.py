"""
Sim Kernel — Name-Based Feature Extraction

Structural signals derived purely from a folder identifier.

Naming convention: one numeric-prefixed token per active seat, joined by
"_", e.g. 25LJ_25HJ_25CO_15BTN_25SB_11BB (six seats, stacks in bb).
"""

from __future__ import annotations

import re

from .constants import FOLDER_TOKEN_DELIMITER

_LEADING_DIGITS = re.compile(r'^[0-9]+')

# Tokens whose numeric prefix does not fit a 32-bit signed int are not seats.
_MAX_TOKEN_VALUE: int = 2**31 - 1


def count_numeric_chunks(folder: str) -> int:
    """Count "_"-separated tokens that start with at least one decimal digit."""
    if not folder or not folder.strip():
        return 0

    count = 0
    for part in folder.split(FOLDER_TOKEN_DELIMITER):
        match = _LEADING_DIGITS.match(part)
        if match is None:
            continue
        if int(match.group()) <= _MAX_TOKEN_VALUE:
            count += 1
    return count
