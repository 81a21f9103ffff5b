"""
Sim Runtime — Aggregation / Cache / Store Tests

Covers:
  - Case-insensitive folder enumeration and snapshot ordering
  - includeMissing inclusion policy
  - Per-folder failure isolation, bounded retry, fatal enumeration failure
  - Concurrency cap and deadline cancellation
  - Snapshot cache: hit within TTL, one fresh pass after expiry,
    single-flight rebuild, failures not cached
  - Precomputed index: not built, corrupt, trusted entries, rebuild
  - Filesystem store, game-tree upload, settings

Run:  python -m sim_runtime.test_runtime
"""

from __future__ import annotations

import asyncio
import gc
import json
import os
import sys
import tempfile
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sim_kernel.domain_types import AggregatedSnapshot, FolderEntry, NormalizedMetadata
from sim_kernel.hashing import snapshot_hash
from sim_kernel.index_codec import encode_index

from sim_runtime.aggregator import (
    AggregationTimeoutError,
    IndexCorruptError,
    IndexNotBuiltError,
    LiveSource,
    PrecomputedIndexSource,
    build_source,
    list_folders,
)
from sim_runtime.cache import SnapshotCache, snapshot_cache_key
from sim_runtime.config import load_settings
from sim_runtime.gametrees import GameTreeUpload, build_gametree_path, sanitize_segment, upload_game_tree
from sim_runtime.index_builder import main as build_index_main
from sim_runtime.object_store import (
    FilesystemObjectStore,
    InMemoryObjectStore,
    ObjectNotFoundError,
    StorageError,
)
from sim_runtime.service import SimMetadataService


_pass = 0
_fail = 0


def _test(name, fn):
    global _pass, _fail
    try:
        fn()
        print(f"  [PASS] {name}")
        _pass += 1
    except Exception as exc:
        print(f"  [FAIL] {name}: {exc!r}")
        _fail += 1


# ══════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════

class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class CountingStore(InMemoryObjectStore):
    """Counts enumerations and tracks peak concurrent fetches."""

    def __init__(self, objects=None, fetch_delay: float = 0.0) -> None:
        super().__init__(objects)
        self.list_calls = 0
        self.fetch_calls = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.fetch_delay = fetch_delay

    async def list_top_level_prefixes(self):
        self.list_calls += 1
        await asyncio.sleep(0)
        return await super().list_top_level_prefixes()

    async def fetch(self, path):
        self.fetch_calls += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.fetch_delay)
            return await super().fetch(path)
        finally:
            self.in_flight -= 1


class FlakyStore(InMemoryObjectStore):
    """Raises StorageError for configured paths a number of times."""

    def __init__(self, objects, failures) -> None:
        super().__init__(objects)
        self.failures = dict(failures)   # path -> remaining failures (-1 = forever)
        self.attempts = {}

    async def fetch(self, path):
        self.attempts[path] = self.attempts.get(path, 0) + 1
        remaining = self.failures.get(path, 0)
        if remaining:
            if remaining > 0:
                self.failures[path] = remaining - 1
            raise StorageError(f"transient failure reading {path}")
        return await super().fetch(path)


class BrokenListingStore(InMemoryObjectStore):
    async def list_top_level_prefixes(self):
        raise StorageError("container unreachable")


class HangingStore(InMemoryObjectStore):
    def __init__(self, objects) -> None:
        super().__init__(objects)
        self.completed = 0
        self.cancelled = 0

    async def fetch(self, path):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        self.completed += 1
        return await super().fetch(path)


def _doc(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


def _mixed_case_objects():
    """Folders B and C have metadata, a does not."""
    return {
        "a/0.rng": b"AKs\n1;0.5",
        "B/metadata.json": _doc(name="FT B", icm=[50, 30, 20]),
        "B/0.rng": b"",
        "C/metadata.json": _doc(name="C main", ante="2"),
    }


def _service(store, clock=None, max_concurrency=4, timeout_s=None):
    return SimMetadataService(
        store=store,
        source=LiveSource(store, max_concurrency=max_concurrency, backoff_s=0),
        cache=SnapshotCache(clock=clock or FakeClock()),
        timeout_s=timeout_s,
        index_name="index.json",
    )


# ══════════════════════════════════════════════════════════════
# Enumeration + live aggregation
# ══════════════════════════════════════════════════════════════

def test_list_folders_dedupes_case_insensitively():
    store = InMemoryObjectStore({
        "abc/metadata.json": b"{}",
        "ABC/other.json": b"{}",
        "b/x": b"",
        "Zed/x": b"",
        "index.json": b"[]",
    })
    folders = asyncio.run(list_folders(store))
    assert folders == ["ABC", "b", "Zed"]


def test_live_aggregation_orders_and_skips_missing():
    store = InMemoryObjectStore(_mixed_case_objects())
    result = asyncio.run(LiveSource(store).aggregate(include_missing=False))
    assert [e.folder for e in result.entries] == ["B", "C"]
    assert result.folder_count == 3
    assert result.missing_count == 1
    b = result.entries[0].metadata
    assert b.tags == ("FT", "ICM")
    assert b.icm_count == 3
    assert result.entries[1].metadata.ante == 2.0


def test_live_aggregation_includes_missing_when_asked():
    store = InMemoryObjectStore(_mixed_case_objects())
    result = asyncio.run(LiveSource(store).aggregate(include_missing=True))
    assert [e.folder for e in result.entries] == ["a", "B", "C"]
    assert result.entries[0] == FolderEntry(folder="a", has_metadata=False, metadata=None)


def test_seats_come_from_folder_name():
    store = InMemoryObjectStore({"25SB_25BB/metadata.json": _doc(icm="none")})
    [entry] = asyncio.run(LiveSource(store).aggregate(include_missing=False)).entries
    assert entry.metadata.seats == 2
    assert entry.metadata.tags == ("HU",)
    assert entry.metadata.name == "25SB_25BB"


def test_malformed_document_still_counts_as_metadata():
    store = InMemoryObjectStore({"x/metadata.json": b"{oops"})
    [entry] = asyncio.run(LiveSource(store).aggregate(include_missing=False)).entries
    assert entry.has_metadata is True
    assert entry.metadata == NormalizedMetadata(name="x")


def test_transient_failure_is_retried():
    store = FlakyStore(_mixed_case_objects(), {"B/metadata.json": 2})
    result = asyncio.run(LiveSource(store, retries=3, backoff_s=0).aggregate(False))
    assert [e.folder for e in result.entries] == ["B", "C"]
    assert store.attempts["B/metadata.json"] == 3
    assert result.failed_count == 0


def test_persistent_failure_degrades_to_missing():
    store = FlakyStore(_mixed_case_objects(), {"B/metadata.json": -1})
    result = asyncio.run(LiveSource(store, retries=2, backoff_s=0).aggregate(True))
    assert [(e.folder, e.has_metadata) for e in result.entries] == [
        ("a", False), ("B", False), ("C", True),
    ]
    assert store.attempts["B/metadata.json"] == 3
    assert result.failed_count == 1


def test_enumeration_failure_is_fatal():
    store = BrokenListingStore(_mixed_case_objects())
    try:
        asyncio.run(LiveSource(store).aggregate(False))
    except StorageError:
        return
    raise AssertionError("enumeration failure swallowed")


def test_fan_out_respects_concurrency_cap():
    objects = {f"f{i:02d}/metadata.json": _doc(name=f"f{i}") for i in range(20)}
    store = CountingStore(objects, fetch_delay=0.01)
    result = asyncio.run(LiveSource(store, max_concurrency=3).aggregate(False))
    assert len(result.entries) == 20
    assert store.fetch_calls == 20
    assert 1 <= store.peak_in_flight <= 3


def test_deadline_cancels_in_flight_fetches():
    store = HangingStore(_mixed_case_objects())
    try:
        asyncio.run(LiveSource(store, max_concurrency=2).aggregate(False, timeout_s=0.05))
    except AggregationTimeoutError as exc:
        assert exc.timeout_s == 0.05
    else:
        raise AssertionError("deadline not enforced")
    assert store.completed == 0
    assert store.cancelled >= 1


def test_out_of_range_document_leaves_other_folders_intact():
    objects = dict(_mixed_case_objects())
    objects["Huge/metadata.json"] = b'{"name": "Huge", "ante": 1' + b"0" * 400 + b', "icm": [1' + b"0" * 400 + b", 50]}"
    store = InMemoryObjectStore(objects)

    result = asyncio.run(LiveSource(store).aggregate(include_missing=False))
    assert [e.folder for e in result.entries] == ["B", "C", "Huge"]
    huge = result.entries[2].metadata
    assert huge.ante == 0.0
    assert huge.icm_count == 2
    assert huge.icm_payouts == (50.0,)

    meta = asyncio.run(_service(store).get_folder_metadata("Huge"))
    assert meta.name == "Huge"


def test_invalid_concurrency_rejected():
    try:
        LiveSource(InMemoryObjectStore(), max_concurrency=0)
    except ValueError:
        return
    raise AssertionError("max_concurrency=0 accepted")


# ══════════════════════════════════════════════════════════════
# Snapshot cache
# ══════════════════════════════════════════════════════════════

def test_snapshot_served_from_cache_within_ttl():
    clock = FakeClock()
    store = CountingStore(_mixed_case_objects())
    service = _service(store, clock)

    async def scenario():
        first = await service.get_aggregated_snapshot(False)
        clock.advance(599)
        second = await service.get_aggregated_snapshot(False)
        return first, second

    first, second = asyncio.run(scenario())
    assert store.list_calls == 1
    assert second is first
    assert snapshot_hash(first.entries) == snapshot_hash(second.entries)
    assert service.last_metrics.cache_hit is True


def test_snapshot_recomputed_once_after_expiry():
    clock = FakeClock()
    store = CountingStore(_mixed_case_objects())
    service = _service(store, clock)

    async def scenario():
        await service.get_aggregated_snapshot(False)
        clock.advance(600)
        await service.get_aggregated_snapshot(False)
        await service.get_aggregated_snapshot(False)

    asyncio.run(scenario())
    assert store.list_calls == 2


def test_include_missing_shapes_do_not_collide():
    store = CountingStore(_mixed_case_objects())
    service = _service(store)

    async def scenario():
        without = await service.get_aggregated_snapshot(False)
        with_missing = await service.get_aggregated_snapshot(True)
        return without, with_missing

    without, with_missing = asyncio.run(scenario())
    assert len(without.entries) == 2
    assert len(with_missing.entries) == 3
    assert store.list_calls == 2
    assert snapshot_cache_key("live", True) != snapshot_cache_key("live", False)


def test_concurrent_misses_share_one_rebuild():
    store = CountingStore(_mixed_case_objects(), fetch_delay=0.01)
    service = _service(store)

    async def scenario():
        return await asyncio.gather(*(service.get_aggregated_snapshot(False) for _ in range(5)))

    snapshots = asyncio.run(scenario())
    assert store.list_calls == 1
    assert all(s is snapshots[0] for s in snapshots)


def test_failed_computation_is_not_cached():
    cache = SnapshotCache(clock=FakeClock())
    calls = []

    async def failing():
        calls.append("fail")
        raise StorageError("down")

    async def succeeding():
        calls.append("ok")
        return AggregatedSnapshot(entries=(), created_at=cache.now())

    async def scenario():
        try:
            await cache.get_or_compute("k", failing)
        except StorageError:
            pass
        else:
            raise AssertionError("failure swallowed")
        return await cache.get_or_compute("k", succeeding)

    snapshot, hit = asyncio.run(scenario())
    assert calls == ["fail", "ok"]
    assert hit is False
    assert cache.get("k") is snapshot


def test_joined_rebuild_reports_pass_counts():
    store = CountingStore(_mixed_case_objects(), fetch_delay=0.01)
    service = _service(store)

    async def one_request():
        await service.get_aggregated_snapshot(False)
        return service.last_metrics

    async def scenario():
        return await asyncio.gather(*(one_request() for _ in range(4)))

    all_metrics = asyncio.run(scenario())
    assert store.list_calls == 1
    for metrics in all_metrics:
        assert metrics.cache_hit is False
        assert metrics.folder_count == 3
        assert metrics.missing_count == 1
        assert metrics.entry_count == 2


def test_abandoned_failed_rebuild_is_not_reported_unretrieved():
    cache = SnapshotCache(clock=FakeClock())

    async def scenario():
        reported = []
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: reported.append(context.get("message", ""))
        )
        gate = asyncio.Event()

        async def failing():
            await gate.wait()
            raise StorageError("down")

        waiter = asyncio.ensure_future(cache.get_or_compute("k", failing))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        waiter.cancel()
        try:
            await waiter
        except asyncio.CancelledError:
            pass
        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        del waiter
        gc.collect()
        return reported

    reported = asyncio.run(scenario())
    assert not [m for m in reported if "never retrieved" in m], reported
    assert cache.get("k") is None


def test_cache_expiry_is_lazy_and_relative_to_creation():
    clock = FakeClock(50.0)
    cache = SnapshotCache(ttl_seconds=10, clock=clock)
    snapshot = AggregatedSnapshot(entries=(), created_at=45.0)
    cache.put("k", snapshot)
    assert cache.get("k") is snapshot
    clock.advance(4)
    assert cache.get("k") is snapshot
    clock.advance(1)
    assert cache.get("k") is None
    cache.put("k", snapshot)
    cache.invalidate()
    assert cache.get("k") is None


# ══════════════════════════════════════════════════════════════
# Precomputed index
# ══════════════════════════════════════════════════════════════

def test_index_not_built():
    source = PrecomputedIndexSource(InMemoryObjectStore(_mixed_case_objects()), "index.json")
    try:
        asyncio.run(source.aggregate(False))
    except IndexNotBuiltError as exc:
        assert "rebuild" in str(exc)
        return
    raise AssertionError("missing index not reported")


def test_index_corrupt_does_not_fall_back():
    objects = dict(_mixed_case_objects(), **{"index.json": b'{"not": "an array"}'})
    source = PrecomputedIndexSource(InMemoryObjectStore(objects), "index.json")
    try:
        asyncio.run(source.aggregate(False))
    except IndexCorruptError:
        return
    raise AssertionError("corrupt index not reported")


def test_index_with_non_finite_numbers_is_corrupt():
    objects = dict(_mixed_case_objects(), **{
        "index.json": b'[{"folder":"B","hasMetadata":true,"metadata":{"name":"B","ante":NaN}}]',
    })
    service = SimMetadataService(
        store=InMemoryObjectStore(objects),
        source=PrecomputedIndexSource(InMemoryObjectStore(objects), "index.json"),
        cache=SnapshotCache(clock=FakeClock()),
    )
    try:
        asyncio.run(service.get_aggregated_snapshot(False))
    except IndexCorruptError as exc:
        assert "corrupt" in str(exc)
        return
    raise AssertionError("non-finite index entry served")


def test_index_entries_are_trusted():
    stale = NormalizedMetadata(name="plain", seats=9, tags=("FT",))
    entries = [
        FolderEntry(folder="zz", has_metadata=True, metadata=stale),
        FolderEntry(folder="Aa", has_metadata=False),
    ]
    store = InMemoryObjectStore({"index.json": encode_index(entries)})
    source = PrecomputedIndexSource(store, "index.json")

    kept = asyncio.run(source.aggregate(include_missing=False))
    assert [e.folder for e in kept.entries] == ["zz"]
    assert kept.entries[0].metadata.tags == ("FT",)

    everything = asyncio.run(source.aggregate(include_missing=True))
    assert [e.folder for e in everything.entries] == ["Aa", "zz"]
    assert everything.missing_count == 1


def test_rebuild_index_then_serve_from_it():
    store = InMemoryObjectStore(_mixed_case_objects())
    live_service = _service(store)
    count = asyncio.run(live_service.rebuild_index())
    assert count == 3

    index_service = SimMetadataService(
        store=store,
        source=build_source("index", store, index_name="index.json"),
        cache=SnapshotCache(clock=FakeClock()),
    )
    live = asyncio.run(live_service.get_aggregated_snapshot(True))
    indexed = asyncio.run(index_service.get_aggregated_snapshot(True))
    assert indexed.source == "index"
    assert indexed.entries == live.entries


def test_rebuild_invalidates_cached_snapshots():
    store = CountingStore(_mixed_case_objects())
    service = _service(store)

    async def scenario():
        await service.get_aggregated_snapshot(False)
        await service.rebuild_index()
        await service.get_aggregated_snapshot(False)

    asyncio.run(scenario())
    assert store.list_calls == 3


# ══════════════════════════════════════════════════════════════
# Service single-folder + raw files
# ══════════════════════════════════════════════════════════════

def test_get_folder_metadata():
    service = _service(InMemoryObjectStore(_mixed_case_objects()))
    meta = asyncio.run(service.get_folder_metadata("B"))
    assert meta.name == "FT B"
    assert meta.tags == ("FT", "ICM")
    assert asyncio.run(service.get_folder_metadata("a")) is None


def test_get_folder_metadata_rejects_traversal():
    service = _service(InMemoryObjectStore(_mixed_case_objects()))
    try:
        asyncio.run(service.get_folder_metadata(".."))
    except ValueError:
        return
    raise AssertionError("traversal accepted")


def test_raw_files_and_rng():
    service = _service(InMemoryObjectStore(_mixed_case_objects()))
    assert asyncio.run(service.list_folder_files("B")) == ["0.rng", "metadata.json"]
    hands = asyncio.run(service.parse_rng_file("a", "0.rng"))
    assert hands["AKs"].ev == 0.5
    try:
        asyncio.run(service.read_file("a", "missing.rng"))
    except ObjectNotFoundError:
        return
    raise AssertionError("missing file not reported")


def test_read_file_reports_bad_file_names():
    service = _service(InMemoryObjectStore(_mixed_case_objects()))
    for bad, message in (("", "File name must not be empty"), ("..", "Invalid file name")):
        try:
            asyncio.run(service.read_file("a", bad))
        except ValueError as exc:
            assert str(exc).startswith(message), exc
            continue
        raise AssertionError(f"{bad!r} accepted")


# ══════════════════════════════════════════════════════════════
# Filesystem store
# ══════════════════════════════════════════════════════════════

def test_filesystem_store():
    with tempfile.TemporaryDirectory() as tmp:
        store = FilesystemObjectStore(tmp)

        async def scenario():
            await store.put("25SB_25BB/metadata.json", _doc(name="FT HU"))
            await store.put("Other/1.rng", b"AA\n1;1")
            await store.put("index.json", b"[]")
            assert await store.list_top_level_prefixes() == {"25SB_25BB", "Other"}
            assert await store.exists("25SB_25BB/metadata.json")
            assert not await store.exists("Other/metadata.json")
            assert await store.list_files("Other") == ["1.rng"]
            try:
                await store.fetch("Other/metadata.json")
            except ObjectNotFoundError:
                pass
            else:
                raise AssertionError("missing object fetched")
            return await LiveSource(store).aggregate(include_missing=True)

        result = asyncio.run(scenario())
        assert [(e.folder, e.has_metadata) for e in result.entries] == [
            ("25SB_25BB", True), ("Other", False),
        ]
        assert result.entries[0].metadata.tags == ("HU", "FT")
        assert not [n for n in os.listdir(os.path.join(tmp, "Other")) if n.startswith(".tmp-")]


def test_store_rejects_parent_paths():
    try:
        asyncio.run(InMemoryObjectStore().fetch("../etc/passwd"))
    except ValueError:
        return
    raise AssertionError("parent path accepted")


# ══════════════════════════════════════════════════════════════
# Game trees
# ══════════════════════════════════════════════════════════════

def test_sanitize_segment():
    assert sanitize_segment(None) == "na"
    assert sanitize_segment("") == "na"
    assert sanitize_segment("a/b\\c?d#e%f") == "a_b_c_d_e_f"
    assert sanitize_segment("..") == "__"
    assert sanitize_segment("UTG+1") == "UTG+1"


def test_gametree_path_layout():
    now = datetime(2026, 3, 7, 9, 5, 1, tzinfo=timezone.utc)
    req = GameTreeUpload(
        text="tree", folder="25LJ/25BB", line=["r2", "c"], acting_pos="BB", is_icm=True,
    )
    assert build_gametree_path(req, now) == (
        "gametrees/2026/03/07/anon/folder=25LJ_25BB/090501_line=r2-c_pos=BB_icm=1.json"
    )


def test_upload_game_tree():
    store = InMemoryObjectStore()
    now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    req = GameTreeUpload(text="{...}", folder="F", uid="u1", alive_positions=["UTG1", "BB"])
    path = asyncio.run(upload_game_tree(store, req, now))
    assert path.startswith("gametrees/2026/01/02/u1/folder=F/030405_line=_pos=na_icm=0")
    payload = json.loads(asyncio.run(store.fetch(path)))
    assert payload["alivePositions"] == ["UTG1", "BB"]
    assert payload["uploadedAtUtc"] == now.isoformat()


def test_upload_requires_text():
    try:
        asyncio.run(upload_game_tree(InMemoryObjectStore(), GameTreeUpload(text="  ")))
    except ValueError:
        return
    raise AssertionError("empty tree accepted")


def test_index_builder_cli():
    with tempfile.TemporaryDirectory() as tmp:
        store = FilesystemObjectStore(tmp)
        asyncio.run(store.put("FT_9A/metadata.json", _doc(name="FT", icm=[1, 2])))
        asyncio.run(store.put("Empty/x.rng", b""))

        code = build_index_main(["--root", tmp, "--index-name", "idx.json", "--timeout", "0"])
        assert code == 0
        entries = json.loads(asyncio.run(store.fetch("idx.json")))
        assert [e["folder"] for e in entries] == ["Empty", "FT_9A"]
        assert entries[1]["metadata"]["tags"] == ["FT", "ICM"]


# ══════════════════════════════════════════════════════════════
# Settings
# ══════════════════════════════════════════════════════════════

def test_settings_defaults_and_validation():
    settings = load_settings({})
    assert settings.aggregation_source == "live"
    assert settings.max_concurrency == 16
    assert settings.snapshot_ttl_s == 600.0

    tuned = load_settings({"SIM_AGGREGATION_SOURCE": "INDEX", "SIM_MAX_CONCURRENCY": "9999"})
    assert tuned.aggregation_source == "index"
    assert tuned.max_concurrency == 256

    for bad in ({"SIM_AGGREGATION_SOURCE": "magic"}, {"SIM_MAX_CONCURRENCY": "lots"},
                {"SIM_SNAPSHOT_TTL_S": "0"}):
        try:
            load_settings(bad)
        except ValueError:
            continue
        raise AssertionError(f"{bad} accepted")


# ══════════════════════════════════════════════════════════════
# Runner
# ══════════════════════════════════════════════════════════════

def main():
    tests = [(name, fn) for name, fn in globals().items() if name.startswith("test_")]

    print(f"\nRunning {len(tests)} tests...\n")
    for name, fn in tests:
        _test(name, fn)

    print(f"\n{'='*60}")
    print(f"  {_pass} passed, {_fail} failed out of {_pass + _fail}")
    print(f"{'='*60}")

    if _fail > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
