"""
Runtime configuration — read once from the environment at startup.

Invalid values are a hard fail naming the offending variable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from sim_kernel.constants import DEFAULT_INDEX_NAME, SNAPSHOT_TTL_SECONDS

from .aggregator import SOURCE_INDEX, SOURCE_LIVE

_MAX_CONCURRENCY_CAP = 256


@dataclass(frozen=True)
class RuntimeSettings:
    storage_root: str = "./data"
    aggregation_source: str = SOURCE_LIVE        # live | index
    index_name: str = DEFAULT_INDEX_NAME
    max_concurrency: int = 16
    aggregation_timeout_s: float = 30.0          # 0 disables the deadline
    snapshot_ttl_s: float = SNAPSHOT_TTL_SECONDS
    fetch_retries: int = 3
    database_url: str = ""
    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> RuntimeSettings:
    env = os.environ if environ is None else environ

    source = env.get("SIM_AGGREGATION_SOURCE", SOURCE_LIVE).strip().lower()
    if source not in (SOURCE_LIVE, SOURCE_INDEX):
        raise ValueError(
            f"SIM_AGGREGATION_SOURCE must be {SOURCE_LIVE!r} or {SOURCE_INDEX!r}, got {source!r}"
        )

    concurrency = _int(env, "SIM_MAX_CONCURRENCY", 16)
    timeout_s = _float(env, "SIM_AGGREGATION_TIMEOUT_S", 30.0)
    ttl_s = _float(env, "SIM_SNAPSHOT_TTL_S", SNAPSHOT_TTL_SECONDS)
    retries = _int(env, "SIM_FETCH_RETRIES", 3)
    if timeout_s < 0:
        raise ValueError(f"SIM_AGGREGATION_TIMEOUT_S must be >= 0, got {timeout_s}")
    if ttl_s <= 0:
        raise ValueError(f"SIM_SNAPSHOT_TTL_S must be > 0, got {ttl_s}")
    if retries < 0:
        raise ValueError(f"SIM_FETCH_RETRIES must be >= 0, got {retries}")

    return RuntimeSettings(
        storage_root=env.get("SIM_STORAGE_ROOT", "./data"),
        aggregation_source=source,
        index_name=env.get("SIM_INDEX_NAME", DEFAULT_INDEX_NAME),
        max_concurrency=max(1, min(_MAX_CONCURRENCY_CAP, concurrency)),
        aggregation_timeout_s=timeout_s,
        snapshot_ttl_s=ttl_s,
        fetch_retries=retries,
        database_url=env.get("DATABASE_URL", ""),
        frontend_url=env.get("FRONTEND_URL", "http://localhost:5173"),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
