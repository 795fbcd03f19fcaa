"""Reconciling local state with the change feed.

Local writes are provisional. Whatever the store reports next for a record
wins, whether it confirms our write, reflects another writer's, or undoes a
transition we lost a race on. `merge_change` is that rule in one place;
`RecordCache` applies it to a set of records.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterator, Mapping

from .models import ChangeEvent
from .store import Record, Store, Subscription, matches


def merge_change(local: Record | None, event: ChangeEvent) -> Record | None:
    """Return the record to keep after `event`.

    The store's version always replaces the local one. Deletes drop it.
    """
    if event.event_type == "delete":
        return None
    if event.new is None:
        return local
    return dict(event.new)


class RecordCache:
    """Optimistic cache of the records matching one store filter.

    `stage()` applies a provisional local patch; the next change event for that
    record replaces it. `refresh()` reloads everything from the store.
    """

    def __init__(
        self,
        store: Store,
        table: str,
        flt: Mapping[str, Any] | None = None,
        *,
        on_change: Callable[[ChangeEvent, Record | None], None] | None = None,
    ) -> None:
        self.store = store
        self.table = table
        self.flt = dict(flt or {})
        self.on_change = on_change
        self._records: dict[str, Record] = {}
        self._lock = threading.RLock()
        self._sub: Subscription | None = None

    def start(self) -> "RecordCache":
        if self._sub is None:
            self._sub = self.store.subscribe(self.table, self.flt, self.apply)
            self.refresh()
        return self

    def close(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.close()

    def refresh(self) -> None:
        rows = self.store.read(self.table, self.flt)
        with self._lock:
            self._records = {r["id"]: r for r in rows}

    def apply(self, event: ChangeEvent) -> None:
        rid = event.record_id
        if rid is None:
            return
        with self._lock:
            merged = merge_change(self._records.get(rid), event)
            if merged is not None and not matches(merged, self.flt):
                # Moved out of the filtered set.
                merged = None
            if merged is None:
                self._records.pop(rid, None)
            else:
                self._records[rid] = merged
        if self.on_change is not None:
            self.on_change(event, merged)

    def stage(self, record_id: str, patch: Mapping[str, Any]) -> None:
        with self._lock:
            current = self._records.get(record_id)
            if current is not None:
                self._records[record_id] = {**current, **patch}

    def get(self, record_id: str) -> Record | None:
        with self._lock:
            rec = self._records.get(record_id)
            return None if rec is None else dict(rec)

    def values(self) -> list[Record]:
        with self._lock:
            return [dict(r) for r in self._records.values()]

    def __iter__(self) -> Iterator[Record]:
        return iter(self.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
