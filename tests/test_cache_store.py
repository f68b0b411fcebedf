from __future__ import annotations

import json
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from filelock import FileLock

from orgscan.cache.store import CacheStore
from orgscan.errors import OperationalFailure
from orgscan.models import ExclusionReason


def test_record_and_persist_round_trip(store: CacheStore, cache_dir: Path, clock) -> None:
    store.record_exclusion("acme/forked", ExclusionReason.FORK)
    assert store.is_excluded("acme/forked", "forks")
    assert not store.is_excluded("acme/other", "forks")

    assert store.persist() == ["forks"]

    data = json.loads((cache_dir / "forks.json").read_text())
    assert data["version"] == 1
    assert data["entries"]["acme/forked"]["reason"] == "fork"

    reloaded = CacheStore(str(cache_dir), clock=clock)
    assert reloaded.is_excluded("acme/forked", "forks")


def test_record_refreshes_existing_entry(store: CacheStore, clock) -> None:
    store.record_exclusion("acme/a", ExclusionReason.ABANDONED)
    first = store.entries("abandoned")["acme/a"].recorded_at

    clock.now += timedelta(hours=1)
    store.record_exclusion("acme/a", ExclusionReason.ABANDONED)

    entries = store.entries("abandoned")
    assert len(entries) == 1
    assert entries["acme/a"].recorded_at > first


def test_corrupt_partition_is_treated_as_empty_and_rebuilt(cache_dir: Path, clock, caplog) -> None:
    (cache_dir / "forks.json").write_text("{not json", encoding="utf-8")
    store = CacheStore(str(cache_dir), clock=clock)

    assert not store.is_excluded("acme/a", "forks")
    assert "corrupt" in caplog.text

    store.record_exclusion("acme/a", ExclusionReason.FORK)
    store.persist()
    data = json.loads((cache_dir / "forks.json").read_text())
    assert list(data["entries"]) == ["acme/a"]


def test_unknown_version_counts_as_corruption(cache_dir: Path, clock) -> None:
    (cache_dir / "forks.json").write_text(json.dumps({"version": 99, "entries": {}}), encoding="utf-8")
    store = CacheStore(str(cache_dir), clock=clock)
    assert store.entries("forks") == {}
    # Rebuilt on the next persist even without new entries
    assert store.persist() == ["forks"]


def test_snapshot_skips_stale_partitions(store: CacheStore, clock) -> None:
    store.record_exclusion("acme/fork", ExclusionReason.FORK)
    store.persist()

    fresh = store.snapshot(["forks", "abandoned"], max_age=timedelta(hours=6))
    assert fresh.is_excluded("acme/fork", "forks")
    assert fresh.reconsidered == frozenset({"abandoned"})

    clock.now += timedelta(hours=7)
    stale = store.snapshot(["forks"], max_age=timedelta(hours=6))
    assert not stale.is_excluded("acme/fork", "forks")
    assert stale.reconsidered == frozenset({"forks"})


def test_force_snapshot_reconsiders_everything(store: CacheStore) -> None:
    store.record_exclusion("acme/fork", ExclusionReason.FORK)
    snapshot = store.snapshot(["forks"], max_age=timedelta(0))
    assert not snapshot.is_excluded("acme/fork", "forks")
    assert "forks" in snapshot.reconsidered


def test_partition_age_tracks_refresh_not_additions(store: CacheStore, clock) -> None:
    assert store.partition_age("forks") is None
    store.record_exclusion("acme/a", ExclusionReason.FORK)
    clock.now += timedelta(hours=2)
    store.record_exclusion("acme/b", ExclusionReason.FORK)
    assert store.partition_age("forks") == timedelta(hours=2)

    store.mark_refreshed("forks")
    assert store.partition_age("forks") == timedelta(0)


def test_concurrent_writers_merge_by_union(cache_dir: Path, clock) -> None:
    first = CacheStore(str(cache_dir), clock=clock)
    second = CacheStore(str(cache_dir), clock=clock)
    first.entries("no-gomod")
    second.entries("no-gomod")

    first.record_exclusion("acme/a", ExclusionReason.NO_MANIFEST, partition="no-gomod")
    second.record_exclusion("acme/b", ExclusionReason.NO_MANIFEST, partition="no-gomod")
    first.persist()
    second.persist()

    merged = CacheStore(str(cache_dir), clock=clock)
    assert set(merged.entries("no-gomod")) == {"acme/a", "acme/b"}


def test_pruned_entries_are_not_resurrected_by_merge(store: CacheStore, cache_dir: Path, clock) -> None:
    store.record_exclusion("acme/old", ExclusionReason.FORK)
    store.persist()

    clock.now += timedelta(days=1)
    removed = store.prune_older_than("forks", clock.now)
    assert removed == ["acme/old"]
    store.persist()

    reloaded = CacheStore(str(cache_dir), clock=clock)
    assert reloaded.entries("forks") == {}


def test_clear_removes_file(store: CacheStore, cache_dir: Path) -> None:
    store.record_exclusion("acme/a", ExclusionReason.FORK)
    store.persist()

    store.clear("forks")
    assert not (cache_dir / "forks.json").exists()
    assert not store.is_excluded("acme/a", "forks")


def test_clear_all_finds_partitions_on_disk(store: CacheStore, cache_dir: Path, clock) -> None:
    other = CacheStore(str(cache_dir), clock=clock)
    other.record_exclusion("acme/a", ExclusionReason.NO_MANIFEST, partition="no-gomod")
    other.persist()

    assert store.clear_all() == ["no-gomod"]
    assert list(cache_dir.iterdir()) == []


def test_legacy_text_cache_is_imported(cache_dir: Path, clock) -> None:
    (cache_dir / "forks.txt").write_text("# forks\nacme/a\nhttps://github.com/acme/b\n\n", encoding="utf-8")
    store = CacheStore(str(cache_dir), clock=clock)
    assert set(store.entries("forks")) == {"acme/a", "acme/b"}


def test_unusable_cache_directory_is_operational_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    store = CacheStore(str(blocker / "caches"))
    with pytest.raises(OperationalFailure):
        store.ensure_directory()


def test_second_writer_waits_for_the_partition_lock(cache_dir: Path, clock, monkeypatch) -> None:
    first = CacheStore(str(cache_dir), clock=clock)
    second = CacheStore(str(cache_dir), clock=clock)
    first.record_exclusion("acme/a", ExclusionReason.NO_MANIFEST, partition="no-gomod")
    second.record_exclusion("acme/b", ExclusionReason.NO_MANIFEST, partition="no-gomod")

    writer = threading.Thread(target=second.persist)
    read_file = first._read_file

    def read_then_start_second_writer(partition):
        result = read_file(partition)
        # The second writer commits here unless it has to wait for the lock
        writer.start()
        writer.join(timeout=0.5)
        return result

    monkeypatch.setattr(first, "_read_file", read_then_start_second_writer)
    first.persist()
    writer.join()

    merged = CacheStore(str(cache_dir), clock=clock)
    assert set(merged.entries("no-gomod")) == {"acme/a", "acme/b"}


def test_lock_held_too_long_is_operational_failure(cache_dir: Path, clock) -> None:
    store = CacheStore(str(cache_dir), clock=clock, lock_timeout=0.05)
    store.record_exclusion("acme/a", ExclusionReason.FORK)

    with FileLock(str(cache_dir / ".forks.lock")):
        with pytest.raises(OperationalFailure):
            store.persist()


@pytest.mark.parametrize(
    "payload",
    [
        {"version": 1, "refreshed_at": "2024-05-01T10:00:00", "entries": {}},
        {"version": 1, "entries": {"acme/a": {"reason": "fork", "recorded_at": None}}},
        {"version": 1, "entries": {"acme/a": {"reason": "fork"}}},
        {"version": 1, "entries": {"acme/a": {"reason": "fork", "recorded_at": "2024-05-01T10:00:00"}}},
        {"version": 1, "entries": {"acme/a": {"reason": "fork", "recorded_at": 1714557600}}},
        {"version": 1, "entries": {"acme/a": ["fork"]}},
    ],
)
def test_malformed_values_are_treated_as_corruption(cache_dir: Path, clock, payload) -> None:
    (cache_dir / "forks.json").write_text(json.dumps(payload), encoding="utf-8")
    store = CacheStore(str(cache_dir), clock=clock)

    snapshot = store.snapshot(["forks"], timedelta(hours=6))
    assert "forks" in snapshot.reconsidered
    assert store.partition_age("forks") is None
    assert store.prune_older_than("forks", clock.now) == []
    assert store.persist() == ["forks"]

    data = json.loads((cache_dir / "forks.json").read_text())
    assert data["entries"] == {}


def test_unreadable_legacy_cache_is_treated_as_empty(cache_dir: Path, clock, caplog) -> None:
    (cache_dir / "forks.txt").write_bytes(b"\xff\xfeacme/a\n")
    store = CacheStore(str(cache_dir), clock=clock)

    assert not store.is_excluded("acme/a", "forks")
    assert "corrupt" in caplog.text

    store.record_exclusion("acme/b", ExclusionReason.FORK)
    store.persist()
    assert set(CacheStore(str(cache_dir), clock=clock).entries("forks")) == {"acme/b"}
