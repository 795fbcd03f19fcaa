import pytest

from venue_queue.kitchen_alerts import AlertPhase, KitchenMonitor, OrderDueAlertScheduler, next_alert_phase
from venue_queue.models import Order, OrderStatus
from venue_queue.orders import OrderStateMachine


class FakeTimers:
    """Repeating-timer factory that records timers instead of starting threads."""

    def __init__(self):
        self.started = []
        self.stopped = []

    def __call__(self, interval, callback):
        handle = len(self.started)
        self.started.append((interval, callback))
        return lambda: self.stopped.append(handle)

    def running(self):
        return [i for i in range(len(self.started)) if i not in self.stopped]


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def scheduler(notifier, clock, timers):
    return OrderDueAlertScheduler(notifier=notifier, clock=clock, timer_factory=timers)


def order(clock, due_in, **kw):
    record = {"id": "o1", "venue_id": "v1", "order_number": 7, "status": "placed", "eta": clock.now() + due_in}
    record.update(kw)
    return Order.from_record(record)


def test_phase_progression_is_pure():
    assert next_alert_phase(90, AlertPhase.NONE) is None
    assert next_alert_phase(45, AlertPhase.NONE) is AlertPhase.ONE_MIN
    assert next_alert_phase(35, AlertPhase.ONE_MIN) is None
    assert next_alert_phase(20, AlertPhase.NONE) is AlertPhase.THIRTY_SEC
    assert next_alert_phase(20, AlertPhase.THIRTY_SEC) is None
    assert next_alert_phase(0, AlertPhase.THIRTY_SEC) is AlertPhase.LATE
    assert next_alert_phase(-30, AlertPhase.LATE) is None


def test_one_notice_per_phase(scheduler, notifier, clock):
    o = order(clock, 50)
    for _ in range(3):
        scheduler.tick([o])
        clock.advance(5)
    assert notifier.titles() == ["1 Minute Warning"]
    assert scheduler.phase("o1") is AlertPhase.ONE_MIN

    clock.set(o.eta - 29)
    assert scheduler.tick([o]) == [("o1", AlertPhase.THIRTY_SEC)]
    scheduler.tick([o])
    assert notifier.titles() == ["1 Minute Warning", "30 Seconds!"]
    assert notifier.notices[-1][1] == "Order #7 due in 30 seconds"


def test_late_order_starts_repeating_alarm(scheduler, notifier, clock, timers):
    o = order(clock, -1)
    scheduler.tick([o])
    scheduler.tick([o])
    assert notifier.titles() == ["Order Late!"]
    assert len(timers.started) == 1
    interval, alarm = timers.started[0]
    assert interval == 10
    alarm()
    assert notifier.vibrations
    assert notifier.vibration_options[-1]["venue_id"] == "v1"
    assert scheduler.alarming == {"o1"}


def test_alarm_stops_when_order_resolved(scheduler, clock, timers):
    o = order(clock, -1)
    scheduler.tick([o])
    o.status = OrderStatus.READY
    scheduler.tick([o])
    assert timers.running() == []
    assert scheduler.phase("o1") is AlertPhase.NONE


def test_alarm_stops_when_order_disappears(scheduler, clock, timers):
    scheduler.tick([order(clock, -1)])
    scheduler.tick([])
    assert timers.running() == []
    assert scheduler.alarming == set()


def test_extension_resets_phase(scheduler, notifier, clock, timers):
    o = order(clock, -1)
    scheduler.tick([o])
    o.eta = clock.now() + 50
    assert scheduler.tick([o]) == [("o1", AlertPhase.ONE_MIN)]
    assert timers.running() == []
    assert notifier.titles() == ["Order Late!", "1 Minute Warning"]


def test_orders_without_eta_are_ignored(scheduler, notifier, clock):
    o = order(clock, 10)
    o.eta = None
    assert scheduler.tick([o]) == []
    assert notifier.notices == []


def test_close_silences_everything(scheduler, clock, timers):
    scheduler.tick([order(clock, -1, id="a"), order(clock, -5, id="b")])
    assert len(timers.running()) == 2
    scheduler.close()
    assert timers.running() == []


def test_monitor_resets_as_soon_as_order_is_ready(store, notifier, clock, timers, make_order):
    scheduler = OrderDueAlertScheduler(notifier=notifier, clock=clock, timer_factory=timers)
    monitor = KitchenMonitor(store=store, venue_id="v1", scheduler=scheduler, interval=None)
    make_order(id="o1", eta=clock.now() - 5)
    make_order(id="o2", eta=clock.now() + 600)
    monitor.start()

    assert monitor.tick() == [("o1", AlertPhase.LATE)]
    assert scheduler.alarming == {"o1"}

    OrderStateMachine(store, notifier=notifier, clock=clock).mark_ready("o1")
    assert scheduler.alarming == set()
    assert timers.running() == []

    monitor.stop()


def test_monitor_picks_up_new_orders(store, notifier, clock, timers, make_order):
    scheduler = OrderDueAlertScheduler(notifier=notifier, clock=clock, timer_factory=timers)
    monitor = KitchenMonitor(store=store, venue_id="v1", scheduler=scheduler, interval=None).start()
    make_order(id="late", eta=clock.now() - 1, status="in_prep")
    make_order(id="elsewhere", venue_id="v2", eta=clock.now() - 1)
    assert monitor.tick() == [("late", AlertPhase.LATE)]
    monitor.stop()
