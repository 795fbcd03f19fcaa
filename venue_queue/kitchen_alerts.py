"""Order due-alert scheduler.

Each kitchen order still being worked on (`placed` / `in_prep`) with an ETA
walks through warning phases as its ETA approaches:

    none -> oneMin (30s < due <= 60s, only from none)
         -> thirtySec (0 < due <= 30s)
         -> late (due <= 0): one notice, then a repeating alarm until resolved

One notice per phase entry, however many ticks land inside the phase. The
phase and the late alarm are reset when the ETA moves, when the order leaves
`placed`/`in_prep`, or when it disappears from the active set.

The phase map and the alarm stop functions belong to one
`OrderDueAlertScheduler`; nothing else touches them.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, ContextManager, Iterable

from .models import ACTIVE_ORDER_STATUSES, ORDERS, ChangeEvent, Order
from .notify import URGENT_VIBRATION, Notifier, best_effort
from .reconcile import RecordCache
from .store import Record, Store
from .timers import Clock, RepeatingTimerFactory, Ticker, thread_timer_factory

logger = logging.getLogger(__name__)

ONE_MIN_WINDOW = 60.0
THIRTY_SEC_WINDOW = 30.0


class AlertPhase(str, Enum):
    NONE = "none"
    ONE_MIN = "oneMin"
    THIRTY_SEC = "thirtySec"
    LATE = "late"


NOTICES = {
    AlertPhase.ONE_MIN: ("1 Minute Warning", "Order #{number} due in 1 minute"),
    AlertPhase.THIRTY_SEC: ("30 Seconds!", "Order #{number} due in 30 seconds"),
    AlertPhase.LATE: ("Order Late!", "Order #{number} is past its ETA"),
}


def next_alert_phase(time_until_due: float, phase: AlertPhase) -> AlertPhase | None:
    """Phase to enter now, or None to stay put. Pure."""
    if time_until_due <= 0:
        return AlertPhase.LATE if phase is not AlertPhase.LATE else None
    if time_until_due <= THIRTY_SEC_WINDOW:
        if phase in (AlertPhase.THIRTY_SEC, AlertPhase.LATE):
            return None
        return AlertPhase.THIRTY_SEC
    if time_until_due <= ONE_MIN_WINDOW:
        return AlertPhase.ONE_MIN if phase is AlertPhase.NONE else None
    return None


class OrderDueAlertScheduler:
    def __init__(
        self,
        *,
        notifier: Notifier,
        clock: Clock,
        timer_factory: RepeatingTimerFactory | None = None,
        late_interval: float = 10.0,
        on_alarm: Callable[[Order], None] | None = None,
    ) -> None:
        self.notifier = best_effort(notifier)
        self.clock = clock
        self.timer_factory = timer_factory or thread_timer_factory()
        self.late_interval = late_interval
        self.on_alarm = on_alarm or self._default_alarm

        self._phases: dict[str, AlertPhase] = {}
        self._stop_fns: dict[str, Callable[[], None]] = {}
        self._etas: dict[str, float] = {}
        self._lock = threading.RLock()

    def phase(self, order_id: str) -> AlertPhase:
        with self._lock:
            return self._phases.get(order_id, AlertPhase.NONE)

    @property
    def alarming(self) -> set[str]:
        """Order ids with a running late alarm."""
        with self._lock:
            return set(self._stop_fns)

    def tick(self, orders: Iterable[Order], *, prune: bool = True) -> list[tuple[str, AlertPhase]]:
        """Evaluate every order once; return the phases entered.

        With `prune`, orders missing from `orders` are treated as resolved.
        """
        now = self.clock.now()
        entered: list[tuple[str, AlertPhase]] = []
        with self._lock:
            seen: set[str] = set()
            for order in orders:
                seen.add(order.id)
                if order.eta is None or order.status not in ACTIVE_ORDER_STATUSES:
                    self.reset(order.id)
                    continue
                last_eta = self._etas.get(order.id)
                if last_eta is not None and last_eta != order.eta:
                    self.reset(order.id)
                self._etas[order.id] = order.eta

                nxt = next_alert_phase(order.eta - now, self._phases.get(order.id, AlertPhase.NONE))
                if nxt is None:
                    continue
                self._enter(order, nxt)
                entered.append((order.id, nxt))

            if prune:
                for gone in (set(self._phases) | set(self._stop_fns) | set(self._etas)) - seen:
                    self.reset(gone)
        return entered

    def reset(self, order_id: str) -> None:
        """Forget the order's phase and silence its alarm."""
        with self._lock:
            self._phases.pop(order_id, None)
            self._etas.pop(order_id, None)
            stop = self._stop_fns.pop(order_id, None)
        if stop is not None:
            stop()
            logger.debug("late alarm stopped for order %s", order_id)

    def close(self) -> None:
        with self._lock:
            ids = set(self._phases) | set(self._stop_fns) | set(self._etas)
        for order_id in ids:
            self.reset(order_id)

    def _enter(self, order: Order, phase: AlertPhase) -> None:
        title, body = NOTICES[phase]
        options = {"audience": "kitchen", "venue_id": order.venue_id, "order_id": order.id, "tag": phase.value}
        if phase is AlertPhase.LATE:
            previous = self._stop_fns.pop(order.id, None)
            if previous is not None:
                previous()
            self._stop_fns[order.id] = self.timer_factory(self.late_interval, lambda: self.on_alarm(order))
            logger.info("order #%s is late, alarm started", order.order_number)
        self._phases[order.id] = phase
        self.notifier.notify(title, body.format(number=order.order_number), options)

    def _default_alarm(self, order: Order) -> None:
        options = {
            "audience": "kitchen", "venue_id": order.venue_id, "order_id": order.id, "tag": AlertPhase.LATE.value
        }
        self.notifier.vibrate(URGENT_VIBRATION, options)


class KitchenMonitor:
    """Feed a venue's active orders to the scheduler every few seconds."""

    def __init__(
        self,
        *,
        store: Store,
        venue_id: str,
        scheduler: OrderDueAlertScheduler,
        interval: float | None = 5.0,
        lock: ContextManager | None = None,
    ) -> None:
        self.venue_id = venue_id
        self.scheduler = scheduler
        self.interval = interval
        self.lock = lock
        self.cache = RecordCache(
            store,
            ORDERS,
            {"venue_id": venue_id, "status": tuple(s.value for s in ACTIVE_ORDER_STATUSES)},
            on_change=self._on_change,
        )
        self._ticker: Ticker | None = None

    def start(self) -> "KitchenMonitor":
        self.cache.start()
        if self.interval is not None:
            self._ticker = Ticker(self.interval, self.tick, name=f"kitchen-{self.venue_id}", lock=self.lock).start()
        return self

    def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.stop()
        self.cache.close()
        self.scheduler.close()

    def tick(self) -> list[tuple[str, AlertPhase]]:
        return self.scheduler.tick(Order.from_record(r) for r in self.cache.values())

    def _on_change(self, event: ChangeEvent, merged: Record | None) -> None:
        # Resolution must silence the alarm now, not on the next tick.
        rid = event.record_id
        if rid is None:
            return
        if merged is None:
            self.scheduler.reset(rid)
        elif event.old is not None and event.old.get("eta") != merged.get("eta"):
            self.scheduler.reset(rid)
