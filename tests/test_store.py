import pytest

from venue_queue.errors import NotFound, WriteConflict
from venue_queue.models import ENTRIES, ChangeEvent
from venue_queue.reconcile import RecordCache, merge_change
from venue_queue.store import InMemoryStore, matches


def test_matches_supports_one_of():
    assert matches({"status": "ready"}, {"status": ("waiting", "ready")})
    assert not matches({"status": "seated"}, {"status": ("waiting", "ready")})
    assert matches({"a": 1}, None)


def test_conditional_write_conflict_changes_nothing(store, make_entry):
    make_entry(id="e1", status="ready")
    with pytest.raises(WriteConflict):
        store.write(ENTRIES, "e1", {"status": "seated"}, expect={"status": "waiting"})
    assert store.read(ENTRIES, {"id": "e1"})[0]["status"] == "ready"


def test_write_unknown_record_raises_not_found(store):
    with pytest.raises(NotFound):
        store.write(ENTRIES, "missing", {"status": "ready"})


def test_update_many_is_all_or_nothing(store, make_entry):
    make_entry(id="a", status="ready")
    make_entry(id="b", status="waiting")
    with pytest.raises(WriteConflict):
        store.update_many(ENTRIES, ["a", "b"], {"status": "cancelled"}, expect={"status": "ready"})
    assert {r["status"] for r in store.read(ENTRIES)} == {"ready", "waiting"}


def test_update_many_checks_each_record_against_its_own_conditions(store, make_entry):
    make_entry(id="a", status="ready")
    make_entry(id="b", status="waiting")
    conditions = {"a": {"status": "ready"}, "b": {"status": "waiting"}}
    rows = store.update_many(ENTRIES, ["a", "b"], {"status": "cancelled"}, expect_each=conditions)
    assert [r["status"] for r in rows] == ["cancelled", "cancelled"]

    with pytest.raises(WriteConflict):
        store.update_many(
            ENTRIES, ["a"], {"status": "seated"}, expect={"venue_id": "v1"}, expect_each={"a": {"status": "ready"}}
        )


def test_insert_many_is_all_or_nothing(store, make_entry):
    make_entry(id="taken")
    with pytest.raises(WriteConflict):
        store.insert_many(ENTRIES, [{"id": "fresh"}, {"id": "taken"}])
    assert [r["id"] for r in store.read(ENTRIES)] == ["taken"]


def test_subscribers_see_records_leaving_their_filter(store, make_entry):
    seen = []
    sub = store.subscribe(ENTRIES, {"status": "ready"}, seen.append)
    make_entry(id="e1", status="ready")
    store.write(ENTRIES, "e1", {"status": "seated"})
    assert [e.event_type for e in seen] == ["insert", "update"]
    assert seen[1].old["status"] == "ready" and seen[1].new["status"] == "seated"

    sub.close()
    store.write(ENTRIES, "e1", {"notes": "after close"})
    assert len(seen) == 2


def test_a_failing_subscriber_does_not_block_others(store, make_entry):
    def broken(event):
        raise RuntimeError("boom")

    seen = []
    store.subscribe(ENTRIES, None, broken)
    store.subscribe(ENTRIES, None, seen.append)
    make_entry(id="e1")
    assert len(seen) == 1


def test_reads_return_copies(clock):
    store = InMemoryStore(clock=clock)
    store.insert(ENTRIES, {"id": "e1", "status": "waiting"})
    store.read(ENTRIES)[0]["status"] = "seated"
    assert store.read(ENTRIES)[0]["status"] == "waiting"


def test_store_version_wins_over_local_copy():
    local = {"id": "e1", "status": "cancelled"}
    event = ChangeEvent(ENTRIES, "update", old=None, new={"id": "e1", "status": "awaiting_confirmation"})
    assert merge_change(local, event)["status"] == "awaiting_confirmation"
    assert merge_change(local, ChangeEvent(ENTRIES, "delete", old=local)) is None


def test_record_cache_staged_patch_is_superseded(store, make_entry):
    make_entry(id="e1", status="ready")
    cache = RecordCache(store, ENTRIES, {"venue_id": "v1"}).start()
    cache.stage("e1", {"status": "cancelled"})
    assert cache.get("e1")["status"] == "cancelled"

    store.write(ENTRIES, "e1", {"awaiting_merchant_confirmation": True})
    assert cache.get("e1")["status"] == "ready"
    cache.close()


def test_record_cache_drops_records_leaving_filter(store, make_entry):
    make_entry(id="e1", status="ready")
    cache = RecordCache(store, ENTRIES, {"status": "ready"}).start()
    assert len(cache) == 1
    store.write(ENTRIES, "e1", {"status": "seated"})
    assert len(cache) == 0
