from __future__ import annotations

# Deadline and ETA extensions.
#
# Two different things share this module:
#
# - The patron's grace extension: once per entry, a ready patron may push
#   their deadline back by a fixed amount. It compounds on the *current*
#   deadline, so asking at the last second still buys the full delta. The write
#   is conditional on `patron_delayed=false`, so two racing requests cannot
#   both succeed.
#
# - Merchant ETA extensions on waiting entries and kitchen orders: any number
#   of them, but the total distance from the original ETA is capped.

import logging

from .entries import EntryAction, QueueEntryStateMachine, TransitionResult
from .errors import PolicyViolation, ValidationError
from .models import ENTRIES, VENUES, EntryPhase, EntryStatus, QueueEntry
from .settings import VenueSettings
from .store import Store

logger = logging.getLogger(__name__)


def effective_settings(store: Store, venue_id: str, base: VenueSettings) -> VenueSettings:
    """`base` with the venue's own overrides applied."""
    rows = store.read(VENUES, {"id": venue_id})
    return base.for_venue(rows[0] if rows else None)


def extended_eta(*, current_eta: float, original_eta: float | None, minutes: float, max_minutes: float) -> float:
    """New ETA after adding `minutes`, enforcing the total extension cap."""
    if minutes <= 0:
        raise ValidationError("extension must be a positive number of minutes")
    original = current_eta if original_eta is None else original_eta
    used = (current_eta - original) / 60
    if used + minutes > max_minutes:
        remaining = max(0, int(max_minutes - used))
        if remaining > 0:
            raise PolicyViolation(
                f"Maximum extension time is {max_minutes:g} minutes. "
                f"You can only add {remaining} more minutes."
            )
        raise PolicyViolation(f"Maximum extension time of {max_minutes:g} minutes has been reached.")
    return current_eta + minutes * 60


class ExtensionPolicy:
    def __init__(self, machine: QueueEntryStateMachine) -> None:
        self.machine = machine

    @property
    def settings(self) -> VenueSettings:
        return self.machine.settings

    def grant_extension(self, entry: QueueEntry | str, delta_minutes: float | None = None) -> TransitionResult:
        """Push a ready patron's deadline back, once."""
        delta = self.settings.grace_minutes if delta_minutes is None else float(delta_minutes)
        if delta <= 0:
            raise ValidationError("extension must be a positive number of minutes")

        current = self.machine.load(entry)
        if current.phase not in (EntryPhase.READY, EntryPhase.DELAYED):
            raise ValidationError("A grace extension is only available while your table is being held")
        if current.patron_delayed:
            raise PolicyViolation("The grace extension has already been used for this booking")

        base = current.ready_deadline if current.ready_deadline is not None else self.machine.clock.now()
        new_deadline = base + delta * 60
        result = self.machine.apply_transition(
            current,
            EntryAction.EXTEND,
            {"ready_deadline": new_deadline, "patron_delayed": True},
            expect={"patron_delayed": False, "awaiting_merchant_confirmation": False},
        )
        if not result.applied:
            if result.entry.patron_delayed:
                # The other request won; this one is the second use.
                raise PolicyViolation("The grace extension has already been used for this booking")
            return result

        e = result.entry
        self.machine.notifier.notify(
            "Patron Running Late",
            f"{e.customer_name or 'A patron'} needs {delta:g} more minutes",
            {"audience": "merchant", "venue_id": e.venue_id, "entry_id": e.id, "tag": "patron-delayed"},
        )
        return result

    def extend_eta(self, entry: QueueEntry | str, minutes: float, reason: str) -> QueueEntry:
        """Merchant pushes a waiting entry's ETA back."""
        current = self.machine.load(entry)
        if current.status is not EntryStatus.WAITING or current.eta is None:
            raise ValidationError("only waiting entries with an ETA can be extended")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("an extension reason is required")
        settings = effective_settings(self.machine.store, current.venue_id, self.settings)
        new_eta = extended_eta(
            current_eta=current.eta,
            original_eta=current.original_eta,
            minutes=float(minutes),
            max_minutes=settings.max_extension_minutes,
        )
        patch = {"eta": new_eta, "notes": f"Extended: {reason}"}
        if current.original_eta is None:
            patch["original_eta"] = current.eta
        # Conditional on the ETA we computed from, so two merchants cannot
        # both extend past the cap.
        row = self.machine.store.write(
            ENTRIES, current.id, patch, expect={"status": EntryStatus.WAITING.value, "eta": current.eta}
        )
        updated = QueueEntry.from_record(row)
        logger.info("entry %s: eta extended by %g min (%s)", updated.id, minutes, reason)
        self.machine.notifier.notify(
            "Wait Time Extended",
            f"Your table will be ready about {float(minutes):g} minutes later - {reason}",
            {"audience": "patron", "venue_id": updated.venue_id, "entry_id": updated.id, "tag": "eta-extended"},
        )
        return updated
