"""Allocation negotiator: find tables for a party at a given time.

Policy:
1. The smallest free table that seats the whole party.
2. Otherwise the combination of free tables with the fewest wasted seats
   (ties: fewer tables). The caller turns this into a split booking.
3. Otherwise no availability, with the first later slot (if any) at which a
   single table is free.

A table is busy when a live entry booked on it has its reservation time (or
ETA, for walk-ins) within `table_buffer_minutes` of the requested time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from .errors import NotFound, ValidationError
from .models import (
    ENTRIES,
    MAX_PARTY_SIZE,
    MIN_PARTY_SIZE,
    TERMINAL_ENTRY_STATUSES,
    VENUES,
    EntryStatus,
    Table,
)
from .settings import VenueSettings
from .store import Store

logger = logging.getLogger(__name__)

# Minutes after the requested time to check for a free single table.
NEXT_SLOT_OFFSETS = (15, 30, 45, 60, 90, 120)

LIVE_ENTRY_STATUSES = tuple(s.value for s in EntryStatus if s not in TERMINAL_ENTRY_STATUSES)


@dataclass(frozen=True)
class AllocationResult:
    available: bool
    matched_table: Table | None = None
    requires_multiple_tables: bool = False
    tables_needed: tuple[Table, ...] = ()
    total_capacity: int | None = None
    utilization_percent: int | None = None
    warning: str | None = None
    next_available_slot: float | None = None
    reason: str | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "allocation",
            "available": self.available,
            "matched_table": self.matched_table.to_record() if self.matched_table else None,
            "requires_multiple_tables": self.requires_multiple_tables,
            "tables_needed": [t.to_record() for t in self.tables_needed],
            "total_capacity": self.total_capacity,
            "utilization_percent": self.utilization_percent,
            "warning": self.warning,
            "next_available_slot": self.next_available_slot,
            "reason": self.reason,
        }


class AllocationNegotiator(Protocol):
    def request_allocation(self, venue_id: str, time: float, party_size: int) -> AllocationResult: ...


def validate_party_size(party_size: Any) -> int:
    try:
        n = int(party_size)
    except (TypeError, ValueError):
        raise ValidationError("party_size must be a number") from None
    if not MIN_PARTY_SIZE <= n <= MAX_PARTY_SIZE:
        raise ValidationError(f"party_size must be between {MIN_PARTY_SIZE} and {MAX_PARTY_SIZE}")
    return n


def pick_single_table(party_size: int, tables: Iterable[Table]) -> Table | None:
    """Smallest table that fits the party (first configured wins ties)."""
    fitting = [t for t in tables if t.capacity >= party_size]
    if not fitting:
        return None
    return min(fitting, key=lambda t: t.capacity)


def find_table_combination(party_size: int, tables: Iterable[Table]) -> tuple[Table, ...]:
    """Least-waste combination of tables seating `party_size`, or `()`.

    Ties go to fewer tables, then to the earliest tables in configured order.
    A combination is never extended once it seats the party (more tables only
    waste more seats), and at each position only the first table of a given
    capacity is tried: a later twin can only produce the same result later.
    """
    pool = list(tables)
    # Seats still available from position i onwards.
    tail = [0] * (len(pool) + 1)
    for i in range(len(pool) - 1, -1, -1):
        tail[i] = tail[i + 1] + pool[i].capacity
    if tail[0] < party_size:
        return ()

    best: tuple[Table, ...] = ()
    best_key: tuple[int, int] | None = None
    chosen: list[Table] = []

    def search(start: int, seated: int) -> None:
        nonlocal best, best_key
        if seated >= party_size:
            key = (seated - party_size, len(chosen))
            if best_key is None or key < best_key:
                best, best_key = tuple(chosen), key
            return
        if best_key is not None and best_key[0] == 0 and len(chosen) + 1 > best_key[1]:
            return
        tried: set[int] = set()
        for i in range(start, len(pool)):
            if seated + tail[i] < party_size:
                break
            table = pool[i]
            if table.capacity in tried:
                continue
            tried.add(table.capacity)
            chosen.append(table)
            search(i + 1, seated + table.capacity)
            chosen.pop()

    search(0, 0)
    return best


class TableAllocator:
    """`AllocationNegotiator` backed by venue records and booked entries."""

    def __init__(self, store: Store, *, settings: VenueSettings | None = None) -> None:
        self.store = store
        self.settings = settings or VenueSettings()

    def venue_tables(self, venue_id: str) -> list[Table]:
        rows = self.store.read(VENUES, {"id": venue_id})
        if not rows:
            raise NotFound(f"venue {venue_id} not found")
        config = (rows[0].get("settings") or {}).get("table_configuration") or []
        if not config:
            raise ValidationError("No table configuration found. Please configure tables in settings.")
        return [Table.from_record(t) for t in config]

    def occupied_table_ids(self, venue_id: str, at: float) -> set[str]:
        buffer = self.settings.table_buffer_minutes * 60
        busy: set[str] = set()
        for rec in self.store.read(ENTRIES, {"venue_id": venue_id, "status": LIVE_ENTRY_STATUSES}):
            table_id = rec.get("assigned_table_id")
            when = rec.get("reservation_time") or rec.get("eta")
            if table_id and when is not None and abs(float(when) - at) <= buffer:
                busy.add(table_id)
        return busy

    def request_allocation(self, venue_id: str, time: float, party_size: int) -> AllocationResult:
        party_size = validate_party_size(party_size)
        tables = self.venue_tables(venue_id)
        occupied = self.occupied_table_ids(venue_id, time)
        free = [t for t in tables if t.id not in occupied]

        single = pick_single_table(party_size, free)
        if single is not None:
            utilization = round(party_size / single.capacity * 100)
            warning = None
            if utilization < 50:
                warning = f"Using {single.capacity}-seat table for party of {party_size}"
            logger.debug("venue %s: party of %d -> table %s", venue_id, party_size, single.id)
            return AllocationResult(
                available=True,
                matched_table=single,
                total_capacity=single.capacity,
                utilization_percent=utilization,
                warning=warning,
            )

        combo = find_table_combination(party_size, free)
        if combo:
            capacity = sum(t.capacity for t in combo)
            logger.debug(
                "venue %s: party of %d -> %d tables (%d seats)", venue_id, party_size, len(combo), capacity
            )
            return AllocationResult(
                available=True,
                requires_multiple_tables=True,
                tables_needed=combo,
                total_capacity=capacity,
                warning=f"Your party of {party_size} requires {len(combo)} tables",
            )

        return AllocationResult(
            available=False,
            reason=f"No tables available for party of {party_size}",
            next_available_slot=self._next_available_slot(venue_id, time, party_size, tables),
        )

    def _next_available_slot(
        self, venue_id: str, time: float, party_size: int, tables: list[Table]
    ) -> float | None:
        for minutes in NEXT_SLOT_OFFSETS:
            at = time + minutes * 60
            occupied = self.occupied_table_ids(venue_id, at)
            if pick_single_table(party_size, [t for t in tables if t.id not in occupied]):
                return at
        return None
