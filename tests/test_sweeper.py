from venue_queue.entries import EXPIRY_REASON
from venue_queue.models import ENTRIES
from venue_queue.sweeper import expire_overdue, overdue_entries, upcoming_reservations

from conftest import T0


def test_overdue_entries(store, make_entry):
    make_entry(status="ready", ready_deadline=T0 - 1)
    make_entry(status="ready", ready_deadline=T0 + 60)
    make_entry(status="ready", ready_deadline=T0 - 1, awaiting_merchant_confirmation=True)
    make_entry(status="waiting")
    assert [e.id for e in overdue_entries(store, T0)] == ["e1"]


def test_expire_overdue_releases_unwatched_entries(store, machine, notifier, make_entry):
    make_entry(status="ready", ready_deadline=T0 - 1)
    make_entry(status="ready", ready_deadline=T0 + 60)
    assert expire_overdue(machine) == ["e1"]
    row = store.read(ENTRIES, {"id": "e1"})[0]
    assert row["status"] == "no_show"
    assert row["cancelled_by"] == "system"
    assert row["cancellation_reason"] == EXPIRY_REASON
    assert "Waitlist Cancelled" in notifier.titles()
    assert expire_overdue(machine) == []


def test_sweep_expires_linked_group_once(store, machine, make_entry):
    make_entry(status="ready", ready_deadline=T0 - 1, linked_reservation_id="L")
    make_entry(status="ready", ready_deadline=T0 - 1, linked_reservation_id="L")
    assert sorted(expire_overdue(machine)) == ["e1", "e2"]


def test_sweep_survives_store_failures(store, machine, make_entry):
    make_entry(status="ready", ready_deadline=T0 - 1)
    store.fail_updates = 1
    assert expire_overdue(machine) == []
    assert expire_overdue(machine) == ["e1"]


def test_sweep_filters_by_venue(store, machine, make_entry):
    make_entry(status="ready", ready_deadline=T0 - 1, venue_id="v2")
    assert expire_overdue(machine, "v1") == []
    assert expire_overdue(machine, "v2") == ["e1"]


def test_upcoming_reservations_sorted(store, make_entry):
    make_entry(reservation_type="reservation", reservation_time=T0 + 20 * 60)
    make_entry(reservation_type="reservation", reservation_time=T0 + 5 * 60)
    make_entry(reservation_type="reservation", reservation_time=T0 + 60 * 60)
    make_entry(reservation_type="walk_in", reservation_time=T0 + 60)
    make_entry(reservation_type="reservation", reservation_time=T0 + 60, status="cancelled")
    assert [e.id for e in upcoming_reservations(store, "v1", T0)] == ["e2", "e1"]


def test_entry_exactly_at_its_deadline_is_swept(store, machine, make_entry):
    make_entry(status="ready", ready_deadline=T0)
    assert [e.id for e in overdue_entries(store, T0)] == ["e1"]
    assert expire_overdue(machine) == ["e1"]
