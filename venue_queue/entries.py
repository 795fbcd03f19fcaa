"""Queue entry state machine.

    waiting -> ready -> awaiting_confirmation -> seated
               ready -> delayed (grace extension) -> awaiting_confirmation
    waiting | ready | delayed | awaiting_confirmation -> cancelled
    ready | delayed -> no_show (deadline expired, system)

`delayed` is not a stored status: it is `ready` with `patron_delayed` set.
`no_show` is stored as such and presented to patrons as `cancelled`.

Every operation validates against the store's current record and then writes
conditionally on that same state. If another writer got there first the write
conflicts, and the operation returns `TransitionResult(applied=False)` with
the record as it now stands: a race outcome, not an error. Local copies held
elsewhere are reconciled by the next change event.

Entries sharing a `linked_reservation_id` (a multi-table booking) move
together: each operation writes every live member of the group in one atomic
batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .errors import InvalidTransition, ValidationError, WriteConflict
from .models import ENTRIES, CancelledBy, EntryPhase, EntryStatus, QueueEntry
from .notify import TABLE_READY_VIBRATION, LogNotifier, Notifier, best_effort
from .settings import VenueSettings
from .store import Store, read_one
from .timers import Clock, SystemClock

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Time expired - patron did not arrive within allocated time"
EXPIRY_NOTICE_TITLE = "Waitlist Cancelled"
EXPIRY_NOTICE_BODY = (
    "Your table was released because you didn't arrive in time. "
    "Please join the waitlist again if needed."
)


class EntryAction(str, Enum):
    MARK_READY = "mark_ready"
    CONFIRM_ARRIVAL = "confirm_arrival"
    SEAT = "seat"
    CANCEL = "cancel"
    EXPIRE = "expire"
    EXTEND = "extend"


P = EntryPhase
A = EntryAction

TRANSITIONS: dict[tuple[EntryPhase, EntryAction], EntryPhase] = {
    (P.WAITING, A.MARK_READY): P.READY,
    (P.READY, A.CONFIRM_ARRIVAL): P.AWAITING_CONFIRMATION,
    (P.DELAYED, A.CONFIRM_ARRIVAL): P.AWAITING_CONFIRMATION,
    (P.READY, A.EXTEND): P.DELAYED,
    (P.AWAITING_CONFIRMATION, A.SEAT): P.SEATED,
    (P.READY, A.EXPIRE): P.NO_SHOW,
    (P.DELAYED, A.EXPIRE): P.NO_SHOW,
    (P.WAITING, A.CANCEL): P.CANCELLED,
    (P.READY, A.CANCEL): P.CANCELLED,
    (P.DELAYED, A.CANCEL): P.CANCELLED,
    (P.AWAITING_CONFIRMATION, A.CANCEL): P.CANCELLED,
}


def next_phase(phase: EntryPhase, action: EntryAction) -> EntryPhase:
    try:
        return TRANSITIONS[(phase, action)]
    except KeyError:
        raise InvalidTransition(f"cannot {action.value.replace('_', ' ')} an entry that is {phase.value}") from None


def stored_status(phase: EntryPhase) -> EntryStatus:
    if phase is EntryPhase.DELAYED:
        return EntryStatus.READY
    return EntryStatus(phase.value)


@dataclass(frozen=True)
class TransitionResult:
    entry: QueueEntry
    applied: bool
    group: tuple[QueueEntry, ...] = field(default=())

    @property
    def lost_race(self) -> bool:
        return not self.applied

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "entry",
            "applied": self.applied,
            "entry": self.entry.to_record(),
            "group": [e.id for e in self.group],
        }


def _entry_id(entry: QueueEntry | str) -> str:
    return entry.id if isinstance(entry, QueueEntry) else str(entry)


class QueueEntryStateMachine:
    def __init__(
        self,
        store: Store,
        *,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        settings: VenueSettings | None = None,
    ) -> None:
        self.store = store
        self.notifier = best_effort(notifier or LogNotifier())
        self.clock = clock or SystemClock()
        self.settings = settings or VenueSettings()

    # -------------------- reads --------------------

    def load(self, entry: QueueEntry | str) -> QueueEntry:
        return QueueEntry.from_record(read_one(self.store, ENTRIES, _entry_id(entry)))

    def group(self, entry: QueueEntry) -> list[QueueEntry]:
        """The entry plus its live linked siblings (entry first)."""
        if not entry.linked_reservation_id:
            return [entry]
        rows = self.store.read(ENTRIES, {"linked_reservation_id": entry.linked_reservation_id})
        siblings = [
            QueueEntry.from_record(r) for r in rows if r["id"] != entry.id
        ]
        return [entry] + [s for s in siblings if not s.is_terminal]

    # -------------------- generic transition --------------------

    def apply_transition(
        self,
        entry: QueueEntry,
        action: EntryAction,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Validate `action` against `entry` and write it to its group.

        A linked sibling joins the batch when `action` is valid from its own
        phase (so a cancel reaches every live sibling, whatever its state) and
        is otherwise left alone. Each member's write is conditional on the
        status it was read with; `expect` applies to `entry` as given and to
        siblings as they were read.
        """
        target = next_phase(entry.phase, action)
        members = [entry] + [s for s in self.group(entry)[1:] if (s.phase, action) in TRANSITIONS]
        full_patch = {"status": stored_status(target).value, **patch}
        conditions = {m.id: self._snapshot(m, expect) for m in members}
        conditions[entry.id] = {"status": entry.status.value, **(expect or {})}
        try:
            rows = self.store.update_many(ENTRIES, list(conditions), full_patch, expect_each=conditions)
        except WriteConflict:
            current = self.load(entry.id)
            logger.info(
                "entry %s: %s lost to a concurrent change (now %s)", entry.id, action.value, current.phase.value
            )
            return TransitionResult(current, applied=False)
        updated = tuple(QueueEntry.from_record(r) for r in rows)
        logger.info("entry %s: %s -> %s", entry.id, entry.phase.value, target.value)
        return TransitionResult(updated[0], applied=True, group=updated)

    @staticmethod
    def _snapshot(member: QueueEntry, expect: Mapping[str, Any] | None) -> dict[str, Any]:
        record = member.to_record()
        return {"status": record["status"], **{k: record.get(k) for k in (expect or {})}}

    # -------------------- operations --------------------

    def mark_ready(self, entry: QueueEntry | str, deadline: float | None = None) -> TransitionResult:
        current = self.load(entry)
        now = self.clock.now()
        if deadline is None:
            deadline = now + self.settings.ready_window_minutes * 60
        if deadline <= now:
            raise ValidationError("ready deadline must be in the future")
        result = self.apply_transition(
            current,
            A.MARK_READY,
            {"ready_at": now, "ready_deadline": float(deadline), "awaiting_merchant_confirmation": False},
        )
        if result.applied:
            self.notifier.notify(
                "Your Table is Ready!",
                "Please proceed to the venue to be seated",
                self._options(result.entry, "patron", tag="table-ready", require_interaction=True),
            )
            self.notifier.vibrate(TABLE_READY_VIBRATION, self._options(result.entry, "patron", tag="table-ready"))
        return result

    def confirm_arrival(self, entry: QueueEntry | str) -> TransitionResult:
        current = self.load(entry)
        result = self.apply_transition(
            current,
            A.CONFIRM_ARRIVAL,
            {"awaiting_merchant_confirmation": True, "ready_deadline": None},
            expect={"awaiting_merchant_confirmation": False},
        )
        if result.applied:
            e = result.entry
            who = e.customer_name or "A patron"
            self.notifier.notify(
                "Patron Arrived",
                f"{who} (party of {e.party_size}) is waiting to be seated",
                self._options(e, "merchant", tag="patron-arrived"),
            )
        return result

    def merchant_seats(self, entry: QueueEntry | str) -> TransitionResult:
        current = self.load(entry)
        result = self.apply_transition(current, A.SEAT, {"awaiting_merchant_confirmation": False})
        if result.applied:
            # Seating is what triggers feedback collection on the patron side.
            self.notifier.notify(
                "Enjoy your meal!",
                "Let us know how your wait went.",
                self._options(result.entry, "patron", tag="feedback", feedback_requested=True),
            )
        return result

    def cancel(
        self, entry: QueueEntry | str, reason: str, actor: CancelledBy | str = CancelledBy.VENUE
    ) -> TransitionResult:
        try:
            actor = CancelledBy(actor)
        except ValueError:
            raise ValidationError(f"unknown cancelling actor {actor!r}") from None
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a cancellation reason is required")
        current = self.load(entry)
        result = self.apply_transition(
            current,
            A.CANCEL,
            {
                "cancellation_reason": reason,
                "cancelled_by": actor.value,
                "ready_deadline": None,
                "awaiting_merchant_confirmation": False,
            },
        )
        if result.applied:
            if actor is CancelledBy.PATRON:
                self.notifier.notify(
                    "Entry Cancelled",
                    f"{result.entry.customer_name or 'A patron'} left the waitlist: {reason}",
                    self._options(result.entry, "merchant", tag="entry-cancelled"),
                )
            else:
                self.notifier.notify(
                    "Waitlist Cancelled", reason, self._options(result.entry, "patron", tag="entry-cancelled")
                )
        return result

    def expire(self, entry: QueueEntry | str) -> TransitionResult:
        """Release a ready entry whose deadline has passed.

        Only acts on `ready`/`delayed` entries that are not awaiting merchant
        confirmation; anything else is a no-op (`applied=False`), so repeating
        the call is always safe.
        """
        current = self.load(entry)
        if current.phase not in (EntryPhase.READY, EntryPhase.DELAYED) or current.awaiting_merchant_confirmation:
            return TransitionResult(current, applied=False)
        now = self.clock.now()
        if current.ready_deadline is not None and now < current.ready_deadline:
            raise ValidationError("ready deadline has not passed yet")
        result = self.apply_transition(
            current,
            A.EXPIRE,
            {
                "cancellation_reason": EXPIRY_REASON,
                "cancelled_by": CancelledBy.SYSTEM.value,
                "ready_deadline": None,
            },
            # An extension or arrival landing first wins.
            expect={"awaiting_merchant_confirmation": False, "patron_delayed": current.patron_delayed},
        )
        if result.applied:
            self.notifier.notify(
                EXPIRY_NOTICE_TITLE,
                EXPIRY_NOTICE_BODY,
                self._options(result.entry, "patron", tag="entry-expired"),
            )
        return result

    # -------------------- helpers --------------------

    @staticmethod
    def _options(entry: QueueEntry, audience: str, **extra: Any) -> dict[str, Any]:
        return {"audience": audience, "venue_id": entry.venue_id, "entry_id": entry.id, **extra}
