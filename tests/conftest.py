import itertools

import pytest

from venue_queue.entries import QueueEntryStateMachine
from venue_queue.errors import ExternalFailure
from venue_queue.models import ENTRIES, ORDERS, VENUES
from venue_queue.store import InMemoryStore
from venue_queue.timers import ManualClock

T0 = 1_700_000_000.0


class RecordingNotifier:
    def __init__(self):
        self.notices = []
        self.vibrations = []
        self.vibration_options = []

    def notify(self, title, body, options=None):
        self.notices.append((title, body, dict(options or {})))

    def vibrate(self, pattern, options=None):
        self.vibrations.append(list(pattern))
        self.vibration_options.append(dict(options or {}))

    def titles(self):
        return [n[0] for n in self.notices]


class FlakyStore(InMemoryStore):
    """Fails the next `fail_updates` batch updates / `fail_inserts` inserts."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_updates = 0
        self.fail_inserts = 0

    def update_many(self, table, record_ids, patch, *, expect=None, expect_each=None):
        if self.fail_updates:
            self.fail_updates -= 1
            raise ExternalFailure("store unavailable")
        return super().update_many(table, record_ids, patch, expect=expect, expect_each=expect_each)

    def insert_many(self, table, records):
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise ExternalFailure("store unavailable")
        return super().insert_many(table, records)


class RacingStore(InMemoryStore):
    """Lets another writer land a patch right before our next update."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.interleave = None

    def update_many(self, table, record_ids, patch, *, expect=None, expect_each=None):
        if self.interleave is not None:
            competitor, self.interleave = self.interleave, None
            super().update_many(*competitor)
        return super().update_many(table, record_ids, patch, expect=expect, expect_each=expect_each)


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def store(clock):
    return FlakyStore(clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def machine(store, notifier, clock):
    return QueueEntryStateMachine(store, notifier=notifier, clock=clock)


@pytest.fixture
def venue(store):
    return store.insert(
        VENUES,
        {
            "id": "v1",
            "name": "Harbour Grill",
            "settings": {
                "table_configuration": [
                    {"id": "t1", "name": "Window", "capacity": 4},
                    {"id": "t2", "name": "Booth", "capacity": 4},
                    {"id": "t3", "name": "Bar", "capacity": 2},
                ]
            },
        },
    )


@pytest.fixture
def make_entry(store):
    counter = itertools.count(1)

    def make(**overrides):
        n = next(counter)
        record = {
            "id": f"e{n}",
            "venue_id": "v1",
            "customer_name": f"Patron {n}",
            "party_size": 2,
            "status": "waiting",
            "position": n,
            "patron_delayed": False,
            "awaiting_merchant_confirmation": False,
        }
        record.update(overrides)
        return store.insert(ENTRIES, record)

    return make


@pytest.fixture
def make_order(store, clock):
    counter = itertools.count(1)

    def make(**overrides):
        n = next(counter)
        record = {
            "id": f"o{n}",
            "venue_id": "v1",
            "order_number": 100 + n,
            "status": "placed",
            "eta": clock.now() + 15 * 60,
            "awaiting_merchant_confirmation": False,
        }
        record.update(overrides)
        return store.insert(ORDERS, record)

    return make
