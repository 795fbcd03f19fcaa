from __future__ import annotations

# Server-side sweeps.
#
# Countdowns run wherever a patron or merchant is watching an entry, but an
# entry nobody is watching still has to be released when its deadline passes.
# `expire_overdue` is that backstop: it goes through the same state machine
# operation, so an entry released by a countdown in the meantime is simply
# skipped.

import logging

from .entries import QueueEntryStateMachine
from .errors import ExternalFailure, ValidationError
from .models import ENTRIES, EntryStatus, QueueEntry, ReservationType
from .store import Store

logger = logging.getLogger(__name__)


def overdue_entries(store: Store, now: float, venue_id: str | None = None) -> list[QueueEntry]:
    flt = {"status": EntryStatus.READY.value, "awaiting_merchant_confirmation": False}
    if venue_id:
        flt["venue_id"] = venue_id
    overdue = []
    for rec in store.read(ENTRIES, flt):
        deadline = rec.get("ready_deadline")
        if deadline is not None and float(deadline) <= now:
            overdue.append(QueueEntry.from_record(rec))
    return overdue


def expire_overdue(machine: QueueEntryStateMachine, venue_id: str | None = None) -> list[str]:
    """Expire every ready entry past its deadline; return the expired ids."""
    now = machine.clock.now()
    expired: list[str] = []
    for entry in overdue_entries(machine.store, now, venue_id):
        try:
            result = machine.expire(entry.id)
        except (ExternalFailure, ValidationError):
            # Picked up again on the next sweep.
            logger.warning("sweep: could not expire entry %s", entry.id, exc_info=True)
            continue
        if result.applied:
            expired.extend(e.id for e in result.group)
    if expired:
        logger.info("sweep: auto-cancelled %d expired entries", len(expired))
    return expired


def upcoming_reservations(
    store: Store, venue_id: str, now: float, *, window_minutes: float = 30.0
) -> list[QueueEntry]:
    """Waiting reservations due within the next `window_minutes`, soonest first."""
    horizon = now + window_minutes * 60
    rows = store.read(
        ENTRIES,
        {
            "venue_id": venue_id,
            "status": EntryStatus.WAITING.value,
            "reservation_type": ReservationType.RESERVATION.value,
        },
    )
    upcoming = [
        QueueEntry.from_record(r)
        for r in rows
        if r.get("reservation_time") is not None and now <= float(r["reservation_time"]) <= horizon
    ]
    upcoming.sort(key=lambda e: e.reservation_time)
    return upcoming
