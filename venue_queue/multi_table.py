"""Multi-table allocation coordinator.

When no single table seats a party, the negotiator proposes a set of tables.
The patron sees the proposal first; nothing is written until they confirm.

- `confirm()` creates one entry per table, all sharing a fresh
  `linked_reservation_id`, in a single atomic `insert_many`.
- `discard()` drops the proposal; nothing was ever written.
- `cancel_linked()` cancels every live entry of the group in a single atomic
  `update_many` (via the state machine's group transition).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from .allocation import AllocationNegotiator, AllocationResult, validate_party_size
from .entries import QueueEntryStateMachine, TransitionResult
from .errors import PolicyViolation, ValidationError
from .models import ENTRIES, CancelledBy, EntryStatus, QueueEntry, ReservationType, Table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SplitProposal:
    venue_id: str
    reservation_time: float
    party_size: int
    tables: tuple[Table, ...]
    customer_name: str = ""
    user_id: str | None = None

    @property
    def required_capacity(self) -> int:
        return self.party_size

    @property
    def total_capacity(self) -> int:
        return sum(t.capacity for t in self.tables)

    @property
    def message(self) -> str:
        return f"Your party of {self.party_size} requires {len(self.tables)} tables"

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "split_proposal",
            "venue_id": self.venue_id,
            "reservation_time": self.reservation_time,
            "party_size": self.party_size,
            "customer_name": self.customer_name,
            "user_id": self.user_id,
            "tables": [t.to_record() for t in self.tables],
            "total_capacity": self.total_capacity,
            "message": self.message,
        }

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "SplitProposal":
        try:
            tables = tuple(Table.from_record(t) for t in msg["tables"])
            return cls(
                venue_id=str(msg["venue_id"]),
                reservation_time=float(msg["reservation_time"]),
                party_size=validate_party_size(msg["party_size"]),
                tables=tables,
                customer_name=str(msg.get("customer_name") or ""),
                user_id=msg.get("user_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"malformed split proposal: {e}") from None


class MultiTableCoordinator:
    def __init__(self, *, negotiator: AllocationNegotiator, machine: QueueEntryStateMachine) -> None:
        self.negotiator = negotiator
        self.machine = machine

    def propose(
        self,
        venue_id: str,
        reservation_time: float,
        party_size: int,
        *,
        customer_name: str = "",
        user_id: str | None = None,
    ) -> tuple[AllocationResult, SplitProposal | None]:
        """Ask the negotiator; return its answer plus a proposal if it needs a split."""
        result = self.negotiator.request_allocation(venue_id, reservation_time, party_size)
        if not (result.available and result.requires_multiple_tables):
            return result, None
        proposal = SplitProposal(
            venue_id=venue_id,
            reservation_time=reservation_time,
            party_size=validate_party_size(party_size),
            tables=tuple(result.tables_needed),
            customer_name=customer_name,
            user_id=user_id,
        )
        return result, proposal

    def confirm(self, proposal: SplitProposal) -> list[QueueEntry]:
        """Create the linked entries, all or none."""
        if len(proposal.tables) < 2:
            raise ValidationError("a split booking needs at least two tables")
        if proposal.total_capacity < proposal.party_size:
            raise ValidationError("the proposed tables do not seat the whole party")

        linked_id = str(uuid.uuid4())
        records = [
            {
                "venue_id": proposal.venue_id,
                "customer_name": proposal.customer_name,
                "user_id": proposal.user_id,
                "party_size": proposal.party_size,
                "status": EntryStatus.WAITING.value,
                "reservation_type": ReservationType.RESERVATION.value,
                "reservation_time": proposal.reservation_time,
                "eta": proposal.reservation_time,
                "original_eta": proposal.reservation_time,
                "assigned_table_id": table.id,
                "linked_reservation_id": linked_id,
                "patron_delayed": False,
                "awaiting_merchant_confirmation": False,
            }
            for table in proposal.tables
        ]
        rows = self.machine.store.insert_many(ENTRIES, records)
        logger.info(
            "venue %s: linked booking %s created on %d tables", proposal.venue_id, linked_id, len(rows)
        )
        return [QueueEntry.from_record(r) for r in rows]

    def discard(self, proposal: SplitProposal) -> None:
        logger.debug("venue %s: split proposal for %d discarded", proposal.venue_id, proposal.party_size)

    def cancel_linked(
        self, entry: QueueEntry | str, reason: str, actor: CancelledBy | str = CancelledBy.PATRON
    ) -> TransitionResult:
        """Cancel a linked entry together with every live sibling."""
        current = self.machine.load(entry)
        if not current.linked_reservation_id:
            raise PolicyViolation("This entry is not part of a multi-table booking")
        return self.machine.cancel(current, reason, actor)

    def linked_entries(self, linked_reservation_id: str) -> list[QueueEntry]:
        rows = self.machine.store.read(ENTRIES, {"linked_reservation_id": linked_reservation_id})
        return [QueueEntry.from_record(r) for r in rows]
