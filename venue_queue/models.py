"""Records handled by the queue core.

Records travel between the store, the change feed and MQTT as plain JSON-safe
dicts. The dataclasses below are the typed view used by the state machines;
convert with `from_record()` / `to_record()`.

Timestamps are POSIX seconds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any


ENTRIES = "waitlist_entries"
ORDERS = "orders"
VENUES = "venues"

MIN_PARTY_SIZE = 1
MAX_PARTY_SIZE = 12


class EntryStatus(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SEATED = "seated"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_ENTRY_STATUSES = frozenset({EntryStatus.SEATED, EntryStatus.CANCELLED, EntryStatus.NO_SHOW})


class EntryPhase(str, Enum):
    """Position in the entry lifecycle.

    Same as the stored status, except that a `ready` entry which used its
    grace extension is in the `delayed` phase.
    """

    WAITING = "waiting"
    READY = "ready"
    DELAYED = "delayed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SEATED = "seated"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class CancelledBy(str, Enum):
    PATRON = "patron"
    VENUE = "venue"
    SYSTEM = "system"


class ReservationType(str, Enum):
    WALK_IN = "walk_in"
    RESERVATION = "reservation"


class OrderStatus(str, Enum):
    AWAITING_VERIFICATION = "awaiting_verification"
    PLACED = "placed"
    IN_PREP = "in_prep"
    READY = "ready"
    COLLECTED = "collected"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no_show"


ACTIVE_ORDER_STATUSES = frozenset({OrderStatus.PLACED, OrderStatus.IN_PREP})
TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COLLECTED, OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.NO_SHOW}
)


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _known_fields(cls, record: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in record.items() if k in names}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class QueueEntry:
    id: str
    venue_id: str
    party_size: int
    status: EntryStatus = EntryStatus.WAITING
    customer_name: str = ""
    position: int | None = None
    eta: float | None = None
    original_eta: float | None = None
    ready_at: float | None = None
    ready_deadline: float | None = None
    patron_delayed: bool = False
    awaiting_merchant_confirmation: bool = False
    cancellation_reason: str | None = None
    cancelled_by: CancelledBy | None = None
    reservation_type: ReservationType = ReservationType.WALK_IN
    reservation_time: float | None = None
    assigned_table_id: str | None = None
    linked_reservation_id: str | None = None
    notes: str | None = None
    created_at: float | None = None
    updated_at: float | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "QueueEntry":
        data = _known_fields(cls, record)
        data["status"] = EntryStatus(data.get("status", EntryStatus.WAITING))
        data["reservation_type"] = ReservationType(data.get("reservation_type") or ReservationType.WALK_IN)
        if data.get("cancelled_by") is not None:
            data["cancelled_by"] = CancelledBy(data["cancelled_by"])
        data["patron_delayed"] = bool(data.get("patron_delayed", False))
        data["awaiting_merchant_confirmation"] = bool(data.get("awaiting_merchant_confirmation", False))
        return cls(**data)

    def to_record(self) -> dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}

    @property
    def phase(self) -> EntryPhase:
        if self.status is EntryStatus.READY and self.patron_delayed:
            return EntryPhase.DELAYED
        return EntryPhase(self.status.value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENTRY_STATUSES

    @property
    def display_status(self) -> str:
        """Status as shown to the patron (`no_show` reads as `cancelled`)."""
        if self.status is EntryStatus.NO_SHOW:
            return EntryStatus.CANCELLED.value
        return self.status.value


@dataclass
class Order:
    id: str
    venue_id: str
    order_number: int
    status: OrderStatus = OrderStatus.AWAITING_VERIFICATION
    customer_name: str = ""
    eta: float | None = None
    original_eta: float | None = None
    notes: str | None = None
    confidence: Confidence | None = None
    awaiting_merchant_confirmation: bool = False
    created_at: float | None = None
    updated_at: float | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Order":
        data = _known_fields(cls, record)
        data["status"] = OrderStatus(data.get("status", OrderStatus.AWAITING_VERIFICATION))
        if data.get("confidence") is not None:
            data["confidence"] = Confidence(data["confidence"])
        data["awaiting_merchant_confirmation"] = bool(data.get("awaiting_merchant_confirmation", False))
        return cls(**data)

    def to_record(self) -> dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}

    @property
    def is_active(self) -> bool:
        """True while the kitchen is still working on the order."""
        return self.status in ACTIVE_ORDER_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


@dataclass(frozen=True)
class Table:
    id: str
    capacity: int
    name: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Table":
        return cls(id=str(record["id"]), capacity=int(record["capacity"]), name=str(record.get("name", "")))

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "capacity": self.capacity, "name": self.name}


@dataclass(frozen=True)
class ChangeEvent:
    """One change-feed notification."""

    table: str
    event_type: str  # insert | update | delete
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None

    @property
    def record_id(self) -> str | None:
        rec = self.new if self.new is not None else self.old
        return None if rec is None else rec.get("id")

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "change",
            "table": self.table,
            "event_type": self.event_type,
            "old": self.old,
            "new": self.new,
        }
