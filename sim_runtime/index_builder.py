"""
Precomputed index builder.

Runs one live aggregation pass over a filesystem store and writes the
index document the "index" aggregation source reads.

Run:  simmeta-build-index --root ./data
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .aggregator import AggregationError, LiveSource
from .cache import SnapshotCache
from .config import load_settings
from .object_store import FilesystemObjectStore, ObjectStoreError
from .service import SimMetadataService

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Build the precomputed folder metadata index.")
    parser.add_argument("--root", default=settings.storage_root, help="Store root directory")
    parser.add_argument("--index-name", default=settings.index_name, help="Index object name")
    parser.add_argument(
        "--max-concurrency", type=int, default=settings.max_concurrency,
        help="Concurrent metadata fetches",
    )
    parser.add_argument(
        "--timeout", type=float, default=settings.aggregation_timeout_s,
        help="Deadline in seconds for the whole pass (0 disables)",
    )
    parser.add_argument("--retries", type=int, default=settings.fetch_retries)
    return parser.parse_args(argv)


async def build_index(
    root: str,
    index_name: str,
    max_concurrency: int = 16,
    timeout_s: Optional[float] = None,
    retries: int = 3,
) -> int:
    store = FilesystemObjectStore(root)
    service = SimMetadataService(
        store=store,
        source=LiveSource(store, max_concurrency=max_concurrency, retries=retries),
        cache=SnapshotCache(),
        timeout_s=timeout_s or None,
        retries=retries,
        index_name=index_name,
        max_concurrency=max_concurrency,
    )
    return await service.rebuild_index()


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    try:
        count = asyncio.run(build_index(
            args.root, args.index_name, args.max_concurrency, args.timeout, args.retries,
        ))
    except (AggregationError, ObjectStoreError, ValueError) as exc:
        logger.error(f"[IndexBuilder] Failed: {exc}")
        return 1
    print(f"Wrote {count} entries to {args.root}/{args.index_name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
