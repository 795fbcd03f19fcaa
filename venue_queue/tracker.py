"""Position/ETA tracker.

A stateless mirror of the external ranking: on every change in the venue's
queue it re-reads the records and derives the patron's own position and ETA
plus the waiting entries ahead of them. Positions are never computed here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .models import ENTRIES, ChangeEvent, EntryStatus, QueueEntry
from .store import Record, Store, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionView:
    entry_id: str
    status: str
    position: int | None
    eta: float | None
    ahead: tuple[QueueEntry, ...] = ()

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "position",
            "entry_id": self.entry_id,
            "status": self.status,
            "position": self.position,
            "eta": self.eta,
            "ahead": [{"id": e.id, "position": e.position, "party_size": e.party_size} for e in self.ahead],
        }


def derive_position_view(entry_id: str, records: Iterable[Record]) -> PositionView | None:
    """Own position/ETA plus the waiting entries ranked ahead, ascending."""
    entries = [QueueEntry.from_record(r) for r in records]
    me = next((e for e in entries if e.id == entry_id), None)
    if me is None:
        return None
    ahead: list[QueueEntry] = []
    if me.status is EntryStatus.WAITING and me.position is not None:
        ahead = [
            e
            for e in entries
            if e.id != me.id
            and e.status is EntryStatus.WAITING
            and e.position is not None
            and e.position < me.position
        ]
        ahead.sort(key=lambda e: e.position)
    return PositionView(
        entry_id=me.id,
        status=me.display_status,
        position=me.position if me.status is EntryStatus.WAITING else None,
        eta=me.eta,
        ahead=tuple(ahead),
    )


class PositionTracker:
    def __init__(
        self,
        *,
        store: Store,
        entry_id: str,
        venue_id: str,
        on_update: Callable[[PositionView], None] | None = None,
    ) -> None:
        self.store = store
        self.entry_id = entry_id
        self.venue_id = venue_id
        self.on_update = on_update
        self.view: PositionView | None = None
        self._sub: Subscription | None = None

    def start(self) -> "PositionTracker":
        self._sub = self.store.subscribe(ENTRIES, {"venue_id": self.venue_id}, self.on_change)
        self.refresh()
        return self

    def stop(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.close()

    def on_change(self, event: ChangeEvent) -> None:
        self.refresh()

    def refresh(self) -> PositionView | None:
        self.view = derive_position_view(self.entry_id, self.store.read(ENTRIES, {"venue_id": self.venue_id}))
        if self.view is not None and self.on_update is not None:
            self.on_update(self.view)
        return self.view
