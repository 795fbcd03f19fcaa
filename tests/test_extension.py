import pytest

from venue_queue.entries import QueueEntryStateMachine
from venue_queue.errors import PolicyViolation, ValidationError
from venue_queue.extension import ExtensionPolicy, extended_eta
from venue_queue.models import ENTRIES, VENUES, EntryPhase

from conftest import RacingStore, RecordingNotifier


def test_extension_compounds_on_current_deadline(machine, notifier, clock, make_entry):
    make_entry(id="e1")
    start = clock.now()
    machine.mark_ready("e1", start + 2 * 60)
    policy = ExtensionPolicy(machine)

    clock.advance(60)
    result = policy.grant_extension("e1")

    assert result.applied
    assert result.entry.ready_deadline == start + 7 * 60
    assert result.entry.patron_delayed
    assert result.entry.phase is EntryPhase.DELAYED
    assert "Patron Running Late" in notifier.titles()

    with pytest.raises(PolicyViolation):
        policy.grant_extension("e1")
    assert machine.load("e1").ready_deadline == start + 7 * 60


def test_extension_custom_delta(machine, clock, make_entry):
    make_entry(id="e1")
    machine.mark_ready("e1", clock.now() + 60)
    result = ExtensionPolicy(machine).grant_extension("e1", delta_minutes=2)
    assert result.entry.ready_deadline == clock.now() + 60 + 120


def test_extension_needs_a_held_table(machine, clock, make_entry):
    make_entry(id="e1")
    policy = ExtensionPolicy(machine)
    with pytest.raises(ValidationError):
        policy.grant_extension("e1")

    machine.mark_ready("e1", clock.now() + 60)
    machine.confirm_arrival("e1")
    with pytest.raises(ValidationError):
        policy.grant_extension("e1")


def test_patron_delayed_stays_set(machine, clock, make_entry):
    make_entry(id="e1")
    machine.mark_ready("e1", clock.now() + 60)
    ExtensionPolicy(machine).grant_extension("e1")
    machine.confirm_arrival("e1")
    machine.merchant_seats("e1")
    assert machine.load("e1").patron_delayed


def test_concurrent_second_request_is_rejected(clock):
    store = RacingStore(clock=clock)
    machine = QueueEntryStateMachine(store, notifier=RecordingNotifier(), clock=clock)
    store.insert(ENTRIES, {"id": "e1", "venue_id": "v1", "party_size": 2, "status": "waiting"})
    machine.mark_ready("e1", clock.now() + 60)

    # Another request flips the flag between our check and our write.
    store.interleave = (ENTRIES, ["e1"], {"patron_delayed": True, "ready_deadline": clock.now() + 360})
    with pytest.raises(PolicyViolation):
        ExtensionPolicy(machine).grant_extension("e1")
    assert machine.load("e1").ready_deadline == clock.now() + 360


def test_extended_eta_cap():
    assert extended_eta(current_eta=1000.0, original_eta=None, minutes=10, max_minutes=45) == 1600.0
    with pytest.raises(PolicyViolation, match="only add 15 more"):
        extended_eta(current_eta=1000.0 + 30 * 60, original_eta=1000.0, minutes=20, max_minutes=45)
    with pytest.raises(PolicyViolation, match="has been reached"):
        extended_eta(current_eta=1000.0 + 45 * 60, original_eta=1000.0, minutes=1, max_minutes=45)
    with pytest.raises(ValidationError):
        extended_eta(current_eta=1000.0, original_eta=None, minutes=0, max_minutes=45)


def test_merchant_extends_waiting_eta(machine, store, notifier, clock, make_entry, venue):
    eta = clock.now() + 20 * 60
    make_entry(id="e1", eta=eta)
    policy = ExtensionPolicy(machine)

    entry = policy.extend_eta("e1", 10, "kitchen backed up")
    assert entry.eta == eta + 600
    assert entry.original_eta == eta
    assert entry.notes == "Extended: kitchen backed up"
    assert "Wait Time Extended" in notifier.titles()

    store.write(VENUES, "v1", {"settings": {**venue["settings"], "max_extension_time": 15}})
    with pytest.raises(PolicyViolation):
        policy.extend_eta("e1", 10, "still backed up")
