import json
import logging

import pytest

from overrides import STORAGE_KEY, JsonFileStorage, MemoryStorage, OrderStatusOverrides, override_key

A = "frank@farm.example"
B = "olive@farm.example"


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage, clock):
    return OrderStatusOverrides(storage=storage, clock=clock, persist_delay=0)


def test_override_key():
    assert override_key("o1") == "o1"
    assert override_key("o1", A) == f"o1::{A}"


def test_record_and_get(cache):
    cache.record("o1", "shipped")
    assert cache.get("o1") == "shipped"
    assert cache.get("o2") is None


def test_scoped_entry_wins_over_bare(cache):
    cache.record("o1", "confirmed")
    cache.record("o1", "shipped", A)
    assert cache.get("o1", A) == "shipped"
    assert cache.get("o1", B) == "confirmed"
    assert cache.get("o1") == "confirmed"


def test_entries_expire(cache, clock):
    cache.record("o1", "shipped")
    clock.advance(299)
    assert cache.get("o1") == "shipped"
    clock.advance(2)
    assert cache.get("o1") is None
    assert len(cache) == 0


def test_apply_overwrites_status_without_mutating_input(cache):
    fetched = [{"id": "o1", "status": "pending"}, {"id": "o2", "status": "pending"}]
    cache.record("o1", "confirmed")

    result = cache.apply(fetched)

    assert result[0] == {"id": "o1", "status": "confirmed"}
    assert result[1] is fetched[1]
    assert fetched[0]["status"] == "pending"


def test_apply_matches_mongo_ids(cache):
    cache.record("abc", "delivered")
    assert cache.apply([{"_id": "abc", "status": "shipped"}])[0]["status"] == "delivered"


def test_apply_on_mixed_order_updates_only_that_farmer(cache):
    order = {"id": "o1", "status": "mixed", "farmerStatuses": {A: "pending", B: "shipped"}}
    cache.record("o1", "confirmed", A)

    result = cache.apply([order], A)[0]

    assert result["status"] == "mixed"
    assert result["farmerStatuses"] == {A: "confirmed", B: "shipped"}
    assert order["farmerStatuses"][A] == "pending"


def test_apply_scoped_entry_on_plain_order(cache):
    cache.record("o1", "shipped", A)
    result = cache.apply([{"id": "o1", "status": "pending"}], A)
    assert result[0]["status"] == "shipped"


def test_apply_leaves_matching_status_alone(cache):
    order = {"id": "o1", "status": "shipped"}
    cache.record("o1", "shipped")
    assert cache.apply([order])[0] is order


def test_apply_handles_empty_input(cache):
    assert cache.apply([]) == []
    assert cache.apply(None) == []


def test_persist_writes_only_fresh_entries(cache, storage, clock):
    cache.record("old", "shipped")
    clock.advance(200)
    cache.record("new", "confirmed")
    clock.advance(150)

    cache.persist()

    snapshot = json.loads(storage.get(STORAGE_KEY))
    assert list(snapshot) == ["new"]
    assert len(cache) == 1


def test_snapshot_is_reloaded(storage, clock):
    first = OrderStatusOverrides(storage=storage, clock=clock, persist_delay=0)
    first.record("o1", "delivered")
    first.record("o2", "shipped", A)

    clock.advance(60)
    second = OrderStatusOverrides(storage=storage, clock=clock)

    assert second.get("o1") == "delivered"
    assert second.get("o2", A) == "shipped"


def test_expired_and_malformed_entries_are_skipped_on_load(storage, clock):
    storage.set(STORAGE_KEY, json.dumps({
        "stale": {"status": "shipped", "timestamp": clock() - 400},
        "fresh": {"status": "confirmed", "timestamp": clock() - 10},
        "broken": {"status": 3},
        "junk": "shipped",
    }))
    cache = OrderStatusOverrides(storage=storage, clock=clock)
    assert len(cache) == 1
    assert cache.get("fresh") == "confirmed"


def test_corrupt_snapshot_starts_empty(storage, clock):
    storage.set(STORAGE_KEY, "{not json")
    assert len(OrderStatusOverrides(storage=storage, clock=clock)) == 0


def test_delayed_persist_is_written_on_flush(storage, clock):
    cache = OrderStatusOverrides(storage=storage, clock=clock, persist_delay=60)
    cache.record("o1", "shipped")
    assert storage.get(STORAGE_KEY) is None

    cache.flush()

    assert json.loads(storage.get(STORAGE_KEY))["o1"]["status"] == "shipped"


class BrokenStorage(MemoryStorage):
    def set(self, key, value):
        raise OSError("disk full")


def test_failed_persist_keeps_entries_in_memory(clock, caplog):
    cache = OrderStatusOverrides(storage=BrokenStorage(), clock=clock, persist_delay=60)
    cache.record("o1", "shipped")

    with caplog.at_level(logging.ERROR, logger="farmfresh.overrides"):
        cache.persist()

    assert "override_persist_failed" in caplog.text
    assert cache.get("o1") == "shipped"


def test_clear(cache, storage):
    cache.record("o1", "shipped")
    cache.clear()
    assert cache.get("o1") is None
    assert storage.get(STORAGE_KEY) is None


def test_json_file_storage(tmp_path, clock):
    path = tmp_path / "state" / "overrides.json"
    storage = JsonFileStorage(path)
    assert storage.get(STORAGE_KEY) is None

    OrderStatusOverrides(storage=storage, clock=clock, persist_delay=0).record("o1", "confirmed")

    assert path.exists()
    reloaded = OrderStatusOverrides(storage=JsonFileStorage(path), clock=clock)
    assert reloaded.get("o1") == "confirmed"

    storage.remove(STORAGE_KEY)
    assert storage.get(STORAGE_KEY) is None
