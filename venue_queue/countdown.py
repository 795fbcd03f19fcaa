"""Deadline countdown engine.

`remaining()` and `countdown_tick()` are pure: given the time and the current
state they say what to show and whether to expire the entry now. The expiry
effect is emitted once per deadline; the guard is lifted again only if the
expiry write fails, so the next tick retries it.

`EntryCountdown` drives that function for one entry from a 1 second ticker and
the entry's change feed. It stops the moment the entry is no longer counting
down: the patron confirmed arrival, the entry was cancelled, expired or
seated. `CountdownSupervisor` keeps one `EntryCountdown` per ready entry of a
venue.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, ContextManager, Union

from .entries import QueueEntryStateMachine
from .errors import ExternalFailure, ValidationError
from .models import ENTRIES, ChangeEvent, EntryPhase, QueueEntry
from .store import Subscription
from .timers import Clock, Ticker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Remaining:
    seconds: float

    @property
    def minutes_part(self) -> int:
        return int(self.seconds // 60)

    @property
    def seconds_part(self) -> int:
        return int(self.seconds % 60)

    @property
    def expired(self) -> bool:
        return self.seconds <= 0

    def __str__(self) -> str:
        return f"{self.minutes_part}:{self.seconds_part:02d}"


def remaining(now: float, deadline: float) -> Remaining:
    return Remaining(max(0.0, deadline - now))


def is_counting(entry: QueueEntry) -> bool:
    """True while the entry's deadline is live."""
    return (
        entry.phase in (EntryPhase.READY, EntryPhase.DELAYED)
        and not entry.awaiting_merchant_confirmation
        and entry.ready_deadline is not None
    )


@dataclass(frozen=True)
class CountdownState:
    entry: QueueEntry
    expiry_fired: bool = False


@dataclass(frozen=True)
class ShowRemaining:
    remaining: Remaining


@dataclass(frozen=True)
class ExpireEntry:
    entry_id: str


@dataclass(frozen=True)
class StopCountdown:
    reason: str


Effect = Union[ShowRemaining, ExpireEntry, StopCountdown]


def countdown_tick(now: float, state: CountdownState) -> tuple[CountdownState, list[Effect]]:
    entry = state.entry
    if not is_counting(entry):
        if entry.awaiting_merchant_confirmation:
            return state, [StopCountdown("arrival confirmed")]
        return state, [StopCountdown(f"entry is {entry.phase.value}")]

    rem = remaining(now, entry.ready_deadline)
    if not rem.expired or state.expiry_fired:
        return state, [ShowRemaining(rem)]
    return replace(state, expiry_fired=True), [ShowRemaining(rem), ExpireEntry(entry.id)]


class EntryCountdown:
    """Live countdown for one ready entry."""

    def __init__(
        self,
        entry: QueueEntry,
        *,
        machine: QueueEntryStateMachine,
        clock: Clock | None = None,
        on_display: Callable[[Remaining], None] | None = None,
        on_stop: Callable[["EntryCountdown"], None] | None = None,
    ) -> None:
        self.machine = machine
        self.clock = clock or machine.clock
        self.on_display = on_display
        self.on_stop = on_stop
        self.state = CountdownState(entry)
        self.last_remaining: Remaining | None = None
        self.stopped = False

        self._sub: Subscription | None = None
        self._ticker: Ticker | None = None
        self._stop_lock = threading.Lock()

    @property
    def entry(self) -> QueueEntry:
        return self.state.entry

    def start(self, *, interval: float | None = 1.0, lock: ContextManager | None = None) -> "EntryCountdown":
        """Subscribe to the entry and, unless `interval` is None, tick on a timer."""
        self._sub = self.machine.store.subscribe(ENTRIES, {"id": self.entry.id}, self.on_change)
        if interval is not None:
            self._ticker = Ticker(interval, self.tick, name=f"countdown-{self.entry.id}", lock=lock).start()
        return self

    def on_change(self, event: ChangeEvent) -> None:
        if event.new is None:
            self.stop()
            return
        fresh = QueueEntry.from_record(event.new)
        fired = self.state.expiry_fired
        if fresh.ready_deadline != self.entry.ready_deadline:
            # New deadline (grace extension): arm expiry again.
            fired = False
        self.state = CountdownState(fresh, expiry_fired=fired)
        if not is_counting(fresh):
            self.stop()

    def tick(self) -> Remaining | None:
        if self.stopped:
            return None
        self.state, effects = countdown_tick(self.clock.now(), self.state)
        for effect in effects:
            if isinstance(effect, ShowRemaining):
                self.last_remaining = effect.remaining
                if self.on_display is not None:
                    self.on_display(effect.remaining)
            elif isinstance(effect, ExpireEntry):
                self._expire()
            elif isinstance(effect, StopCountdown):
                logger.debug("countdown %s stopped: %s", self.entry.id, effect.reason)
                self.stop()
        return self.last_remaining

    def _expire(self) -> None:
        try:
            result = self.machine.expire(self.entry.id)
        except (ExternalFailure, ValidationError):
            logger.warning("countdown %s: expiry failed, retrying on next tick", self.entry.id, exc_info=True)
            self.state = replace(self.state, expiry_fired=False)
            return
        self.state = replace(self.state, entry=result.entry)
        if not result.applied:
            logger.info("countdown %s: entry resolved elsewhere (%s)", self.entry.id, result.entry.phase.value)
        self.stop()

    def stop(self) -> None:
        with self._stop_lock:
            if self.stopped:
                return
            self.stopped = True
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.close()
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            # Often called from feed handling under the tick lock; do not join.
            ticker.stop(wait=False)
        if self.on_stop is not None:
            self.on_stop(self)


class CountdownSupervisor:
    """Run one countdown per counting entry (optionally of one venue)."""

    def __init__(
        self,
        *,
        machine: QueueEntryStateMachine,
        venue_id: str | None = None,
        interval: float | None = 1.0,
        lock: ContextManager | None = None,
    ) -> None:
        self.machine = machine
        self.venue_id = venue_id
        self.interval = interval
        self.lock = lock
        self._countdowns: dict[str, EntryCountdown] = {}
        self._guard = threading.RLock()
        self._sub: Subscription | None = None

    @property
    def active_ids(self) -> set[str]:
        with self._guard:
            return set(self._countdowns)

    def start(self) -> "CountdownSupervisor":
        flt = {"venue_id": self.venue_id} if self.venue_id else None
        self._sub = self.machine.store.subscribe(ENTRIES, flt, self.on_change)
        ready = dict(flt or {}, status="ready")
        for rec in self.machine.store.read(ENTRIES, ready):
            self._track(QueueEntry.from_record(rec))
        return self

    def on_change(self, event: ChangeEvent) -> None:
        if event.new is not None:
            self._track(QueueEntry.from_record(event.new))

    def tick(self) -> None:
        """Tick every countdown once (for timer-less operation)."""
        with self._guard:
            countdowns = list(self._countdowns.values())
        for cd in countdowns:
            cd.tick()

    def stop(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.close()
        with self._guard:
            countdowns = list(self._countdowns.values())
        for cd in countdowns:
            cd.stop()

    def _track(self, entry: QueueEntry) -> None:
        if not is_counting(entry):
            return
        with self._guard:
            if entry.id in self._countdowns:
                return
            cd = EntryCountdown(entry, machine=self.machine, on_stop=self._forget)
            self._countdowns[entry.id] = cd
        cd.start(interval=self.interval, lock=self.lock)
        logger.debug("countdown started for entry %s", entry.id)

    def _forget(self, cd: EntryCountdown) -> None:
        with self._guard:
            if self._countdowns.get(cd.entry.id) is cd:
                del self._countdowns[cd.entry.id]
