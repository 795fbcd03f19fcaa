import pytest

from venue_queue.service import VenueService
from venue_queue.settings import VenueSettings

from conftest import T0


@pytest.fixture
def service(store, notifier, clock, venue):
    return VenueService(store=store, notifier=notifier, clock=clock, settings=VenueSettings())


def test_unknown_request_type(service):
    reply = service.handle({"type": "teleport"})
    assert reply["type"] == "error"
    assert reply["code"] == "unknown_request"


def test_missing_field_is_bad_request(service):
    reply = service.handle({"type": "mark_ready"})
    assert reply == {"type": "error", "code": "bad_request", "message": "entry_id required"}


def test_unknown_entry_is_not_found(service):
    assert service.handle({"type": "seat", "entry_id": "nope"})["code"] == "not_found"


def test_waitlist_flow_with_grace_extension(service, notifier):
    joined = service.handle({"type": "join_waitlist", "venue_id": "v1", "party_size": 2, "entry_id": "e1"})
    assert joined["entry"]["status"] == "waiting"

    ready = service.handle({"type": "mark_ready", "entry_id": "e1"})
    assert ready["applied"]
    assert ready["entry"]["ready_deadline"] == T0 + 5 * 60

    extended = service.handle({"type": "extend_grace", "entry_id": "e1"})
    assert extended["entry"]["ready_deadline"] == T0 + 10 * 60
    assert extended["entry"]["patron_delayed"] is True

    again = service.handle({"type": "extend_grace", "entry_id": "e1"})
    assert again["code"] == "policy_violation"

    arrived = service.handle({"type": "confirm_arrival", "entry_id": "e1"})
    assert arrived["entry"]["status"] == "awaiting_confirmation"
    seated = service.handle({"type": "seat", "entry_id": "e1"})
    assert seated["entry"]["status"] == "seated"
    assert "Your Table is Ready!" in notifier.titles()


def test_invalid_party_size_rejected(service):
    reply = service.handle({"type": "join_waitlist", "venue_id": "v1", "party_size": 40})
    assert reply["code"] == "bad_request"


def test_split_booking_round_trip(service, store):
    offer = service.handle({"type": "request_allocation", "venue_id": "v1", "party_size": 7, "time": T0 + 3600})
    assert offer["requires_multiple_tables"]
    assert [t["id"] for t in offer["tables_needed"]] == ["t1", "t2"]

    confirmed = service.handle({"type": "confirm_split", "proposal": offer["proposal"]})
    assert len(confirmed["entries"]) == 2
    first = confirmed["entries"][0]["id"]

    cancelled = service.handle({"type": "cancel_linked", "entry_id": first, "reason": "plans changed"})
    assert cancelled["applied"]
    assert sorted(cancelled["group"]) == sorted(e["id"] for e in confirmed["entries"])
    assert {e["status"] for e in store.read("waitlist_entries")} == {"cancelled"}


def test_position_request(service, make_entry):
    make_entry(position=1)
    make_entry(position=2)
    reply = service.handle({"type": "position", "entry_id": "e2"})
    assert reply["position"] == 2
    assert [a["id"] for a in reply["ahead"]] == ["e1"]


def test_order_flow_and_eta_cap(service):
    placed = service.handle({"type": "place_order", "venue_id": "v1", "order_id": "o1", "eta_minutes": 10})
    assert placed["order"]["order_number"] == 1
    assert service.handle({"type": "verify_order", "order_id": "o1"})["order"]["status"] == "placed"

    ok = service.handle({"type": "extend_order_eta", "order_id": "o1", "minutes": 40, "reason": "rush"})
    assert ok["order"]["eta"] == T0 + 50 * 60
    capped = service.handle({"type": "extend_order_eta", "order_id": "o1", "minutes": 10, "reason": "rush"})
    assert capped["code"] == "policy_violation"

    cancelled = service.handle({"type": "cancel_order", "order_id": "o1", "reason": "closing"})
    assert cancelled["order"]["status"] == "cancelled"
    assert cancelled["order"]["eta"] is None


def test_sweep_request(service, make_entry, clock):
    make_entry(status="ready", ready_deadline=T0 - 1)
    assert service.handle({"type": "sweep"})["expired"] == ["e1"]


def test_malformed_numbers_get_an_error_reply(service):
    reply = service.handle({"type": "place_order", "venue_id": "v1", "order_number": "abc"})
    assert reply == {"type": "error", "code": "bad_request", "message": "order_number must be a whole number"}

    reply = service.handle({"type": "join_waitlist", "venue_id": "v1", "party_size": 2, "position": "first"})
    assert reply["code"] == "bad_request"

    reply = service.handle({"type": "extend_grace", "entry_id": "e1", "minutes": "lots"})
    assert reply["message"] == "minutes must be a number"


def test_unexpected_failures_still_get_a_reply(service, monkeypatch):
    def explode(msg):
        raise RuntimeError("boom")

    monkeypatch.setitem(service._handlers, "seat", explode)
    reply = service.handle({"type": "seat", "entry_id": "e1"})
    assert reply["type"] == "error"
    assert reply["message"] == "Something went wrong. Please try again."
