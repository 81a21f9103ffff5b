"""
Sim Kernel — .rng Solver Output Parser

A .rng file is a sequence of line pairs:

    AKs
    0.875;1.2345

hand name, then "strategy;ev". Pairs whose value line does not hold
exactly two numbers are skipped. A trailing unpaired line is ignored.
Later occurrences of a hand overwrite earlier ones.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class HandStrategy:
    strategy: float
    ev: float

    def to_dict(self) -> Dict[str, float]:
        return {"strategy": self.strategy, "ev": self.ev}


def parse_rng_text(text: str) -> Dict[str, HandStrategy]:
    lines: List[str] = text.splitlines()
    result: Dict[str, HandStrategy] = {}

    for i in range(0, len(lines) - 1, 2):
        hand = lines[i].strip()
        values = lines[i + 1].split(";")
        if len(values) != 2:
            continue
        try:
            strategy = float(values[0])
            ev = float(values[1])
        except ValueError:
            continue
        if not (math.isfinite(strategy) and math.isfinite(ev)):
            continue
        result[hand] = HandStrategy(strategy=strategy, ev=ev)

    return result
