"""
Observability — In-process aggregation metrics.

No external dependencies. One record per snapshot request.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass(frozen=True)
class AggregationMetrics:
    """What one snapshot request cost and produced."""

    source: str                 # live | index
    include_missing: bool
    latency_ms: float
    folder_count: int           # folders considered (index: entries read)
    entry_count: int            # entries in the snapshot
    missing_count: int          # folders without metadata.json
    failed_count: int           # folders whose fetch failed after retries
    cache_hit: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def elapsed_ms(start: float, end: float) -> float:
    return round((end - start) * 1000.0, 2)
