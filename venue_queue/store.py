"""Persistence and change-feed collaborator.

The queue core never owns records: it reads them from a `Store`, mutates them
through conditional writes, and learns about every change (its own and other
writers') from the store's change feed.

`InMemoryStore` is a transactional implementation good enough to run the
service on its own and to drive the tests. Any real backend only has to honour
the same contract:

- `write()` / `update_many()` apply `expect` atomically with the patch. A
  mismatch raises `WriteConflict` and changes nothing. `update_many()` also
  takes `expect_each`: extra per-record conditions, merged over `expect`.
- `insert_many()` / `update_many()` are all-or-nothing.
- Subscribers see one `ChangeEvent` per changed record, after the commit.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Callable, Iterable, Mapping, Protocol

from .errors import NotFound, WriteConflict
from .models import ChangeEvent
from .timers import Clock, SystemClock

logger = logging.getLogger(__name__)

Record = dict[str, Any]
ChangeHandler = Callable[[ChangeEvent], None]


def matches(record: Mapping[str, Any], flt: Mapping[str, Any] | None) -> bool:
    """Field equality filter.

    A tuple/list/set/frozenset value means "one of".
    """
    if not flt:
        return True
    for key, want in flt.items():
        have = record.get(key)
        if isinstance(want, (tuple, list, set, frozenset)):
            # Compare with == so str-valued enums match their plain values.
            if not any(have == w for w in want):
                return False
        elif have != want:
            return False
    return True


class Subscription(Protocol):
    def close(self) -> None: ...


class Store(Protocol):
    def read(self, table: str, flt: Mapping[str, Any] | None = None) -> list[Record]: ...

    def write(
        self, table: str, record_id: str, patch: Mapping[str, Any], *, expect: Mapping[str, Any] | None = None
    ) -> Record: ...

    def insert_many(self, table: str, records: Iterable[Mapping[str, Any]]) -> list[Record]: ...

    def update_many(
        self,
        table: str,
        record_ids: Iterable[str],
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
        expect_each: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> list[Record]: ...

    def subscribe(self, table: str, flt: Mapping[str, Any] | None, handler: ChangeHandler) -> Subscription: ...


def read_one(store: Store, table: str, record_id: str) -> Record:
    rows = store.read(table, {"id": record_id})
    if not rows:
        raise NotFound(f"{table} record {record_id} not found")
    return rows[0]


class _MemorySubscription:
    def __init__(self, store: "InMemoryStore", key: int) -> None:
        self._store = store
        self._key = key

    def close(self) -> None:
        self._store._unsubscribe(self._key)


class InMemoryStore:
    """Thread-safe dict-of-dicts store with a synchronous change feed."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, Record]] = {}

        # key -> (table, filter, handler)
        self._subs: dict[int, tuple[str, dict[str, Any], ChangeHandler]] = {}
        self._next_key = 0

    # -------------------- reads --------------------

    def read(self, table: str, flt: Mapping[str, Any] | None = None) -> list[Record]:
        with self._lock:
            rows = self._tables.get(table, {}).values()
            return [copy.deepcopy(r) for r in rows if matches(r, flt)]

    # -------------------- writes --------------------

    def write(
        self, table: str, record_id: str, patch: Mapping[str, Any], *, expect: Mapping[str, Any] | None = None
    ) -> Record:
        return self.update_many(table, [record_id], patch, expect=expect)[0]

    def update_many(
        self,
        table: str,
        record_ids: Iterable[str],
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
        expect_each: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> list[Record]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []
        with self._lock:
            rows = self._tables.get(table, {})
            for rid in ids:
                current = rows.get(rid)
                if current is None:
                    raise NotFound(f"{table} record {rid} not found")
                conditions = {**(expect or {}), **((expect_each or {}).get(rid) or {})}
                if not matches(current, conditions):
                    raise WriteConflict(f"{table} record {rid} changed concurrently")

            now = self.clock.now()
            events: list[ChangeEvent] = []
            updated: list[Record] = []
            for rid in ids:
                old = rows[rid]
                new = {**old, **copy.deepcopy(dict(patch)), "updated_at": now}
                rows[rid] = new
                events.append(ChangeEvent(table, "update", copy.deepcopy(old), copy.deepcopy(new)))
                updated.append(copy.deepcopy(new))
        self._dispatch(events)
        return updated

    def insert_many(self, table: str, records: Iterable[Mapping[str, Any]]) -> list[Record]:
        with self._lock:
            rows = self._tables.setdefault(table, {})
            now = self.clock.now()
            staged: list[Record] = []
            for rec in records:
                new = copy.deepcopy(dict(rec))
                new.setdefault("id", str(uuid.uuid4()))
                new.setdefault("created_at", now)
                new["updated_at"] = now
                if new["id"] in rows or any(s["id"] == new["id"] for s in staged):
                    raise WriteConflict(f"{table} record {new['id']} already exists")
                staged.append(new)
            for new in staged:
                rows[new["id"]] = new
            events = [ChangeEvent(table, "insert", None, copy.deepcopy(r)) for r in staged]
        self._dispatch(events)
        return [copy.deepcopy(r) for r in staged]

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        return self.insert_many(table, [record])[0]

    def delete(self, table: str, record_id: str) -> None:
        with self._lock:
            old = self._tables.get(table, {}).pop(record_id, None)
        if old is None:
            raise NotFound(f"{table} record {record_id} not found")
        self._dispatch([ChangeEvent(table, "delete", old, None)])

    # -------------------- change feed --------------------

    def subscribe(self, table: str, flt: Mapping[str, Any] | None, handler: ChangeHandler) -> _MemorySubscription:
        with self._lock:
            key = self._next_key
            self._next_key += 1
            self._subs[key] = (table, dict(flt or {}), handler)
        return _MemorySubscription(self, key)

    def _unsubscribe(self, key: int) -> None:
        with self._lock:
            self._subs.pop(key, None)

    def _dispatch(self, events: list[ChangeEvent]) -> None:
        with self._lock:
            subs = list(self._subs.values())
        for event in events:
            for table, flt, handler in subs:
                if table != event.table:
                    continue
                if not any(r is not None and matches(r, flt) for r in (event.old, event.new)):
                    continue
                try:
                    handler(event)
                except Exception:
                    # One broken subscriber must not starve the others.
                    logger.exception("change handler failed for %s/%s", event.table, event.record_id)
