from __future__ import annotations

# The venue service.
#
# Two layers, as everywhere in this package:
# 1) `VenueService`: request dispatch over the state machines, no broker
#    needed (what the tests drive).
# 2) `MqttVenueService` + `main()`: answers requests arriving over MQTT,
#    mirrors the change feed onto per-venue topics and runs the background
#    timers (countdowns, kitchen alerts, expiry sweep).
#
# One re-entrant lock serialises request handling, ticks and feed handling so
# the core only ever sees one thing happening at a time.

import argparse
import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, TYPE_CHECKING

from .allocation import TableAllocator, validate_party_size
from .countdown import CountdownSupervisor
from .entries import QueueEntryStateMachine
from .errors import RETRY_MESSAGE, ErrorResponse, NotFound, ValidationError, VenueQueueError
from .extension import ExtensionPolicy
from .kitchen_alerts import KitchenMonitor, OrderDueAlertScheduler
from .models import ENTRIES, ORDERS, VENUES, ChangeEvent, EntryStatus, OrderStatus, ReservationType
from .multi_table import MultiTableCoordinator, SplitProposal
from .notify import LogNotifier, Notifier, best_effort
from .orders import OrderStateMachine
from .settings import VenueSettings
from .store import InMemoryStore, Store, Subscription
from .sweeper import expire_overdue, upcoming_reservations
from .timers import Clock, SystemClock, Ticker, thread_timer_factory
from .tracker import derive_position_view

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], dict[str, Any]]


def _require(msg: dict[str, Any], key: str) -> Any:
    value = msg.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} required")
    return value


def _number(msg: dict[str, Any], key: str, default: float | None = None) -> float | None:
    value = msg.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number") from None


def _integer(msg: dict[str, Any], key: str, default: int | None = None) -> int | None:
    value = msg.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a whole number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a whole number") from None


class VenueService:
    """Request dispatch (testable without MQTT)."""

    def __init__(
        self,
        *,
        store: Store,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        settings: VenueSettings | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or VenueSettings()
        self.notifier = best_effort(notifier or LogNotifier())
        self.lock = threading.RLock()

        self.entries = QueueEntryStateMachine(
            store, notifier=self.notifier, clock=self.clock, settings=self.settings
        )
        self.extensions = ExtensionPolicy(self.entries)
        self.orders = OrderStateMachine(store, notifier=self.notifier, clock=self.clock, settings=self.settings)
        self.allocator = TableAllocator(store, settings=self.settings)
        self.multi_table = MultiTableCoordinator(negotiator=self.allocator, machine=self.entries)

        self._handlers: dict[str, Handler] = {
            # waitlist
            "join_waitlist": self._join_waitlist,
            "request_allocation": self._request_allocation,
            "confirm_split": self._confirm_split,
            "discard_split": self._discard_split,
            "mark_ready": self._mark_ready,
            "confirm_arrival": lambda m: self.entries.confirm_arrival(_require(m, "entry_id")).to_message(),
            "seat": lambda m: self.entries.merchant_seats(_require(m, "entry_id")).to_message(),
            "cancel_entry": self._cancel_entry,
            "cancel_linked": self._cancel_linked,
            "extend_grace": self._extend_grace,
            "extend_entry_eta": self._extend_entry_eta,
            "position": self._position,
            "upcoming_reservations": self._upcoming,
            "sweep": lambda m: {"type": "swept", "expired": expire_overdue(self.entries, m.get("venue_id"))},
            # kitchen
            "place_order": self._place_order,
            "verify_order": lambda m: self.orders.verify(_require(m, "order_id")).to_message(),
            "reject_order": lambda m: self.orders.reject(_require(m, "order_id"), m.get("reason")).to_message(),
            "start_prep": lambda m: self.orders.start_prep(_require(m, "order_id")).to_message(),
            "order_ready": lambda m: self.orders.mark_ready(_require(m, "order_id")).to_message(),
            "confirm_pickup": lambda m: self.orders.confirm_pickup(_require(m, "order_id")).to_message(),
            "collect_order": lambda m: self.orders.collect(_require(m, "order_id")).to_message(),
            "order_no_show": lambda m: self.orders.mark_no_show(_require(m, "order_id")).to_message(),
            "cancel_order": lambda m: self.orders.cancel(
                _require(m, "order_id"), str(m.get("reason") or "")
            ).to_message(),
            "extend_order_eta": lambda m: self.orders.extend_eta(
                _require(m, "order_id"), _number(m, "minutes", 0.0), str(m.get("reason") or "")
            ).to_message(),
        }

    @property
    def request_types(self) -> list[str]:
        return sorted(self._handlers)

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Handle one request; always returns a reply message."""
        mtype = msg.get("type")
        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        if handler is None:
            return ErrorResponse("unknown_request", f"Unknown request type {mtype!r}").to_message()
        try:
            with self.lock:
                return handler(msg)
        except VenueQueueError as e:
            if e.code in ("bad_request", "invalid_transition", "not_found", "policy_violation"):
                logger.info("%s rejected: %s", mtype, e)
            else:
                logger.warning("%s failed: %s", mtype, e)
            return ErrorResponse.from_exception(e).to_message()
        except Exception:
            # Still answer, so the caller is not left waiting for a timeout.
            logger.exception("%s crashed", mtype)
            return ErrorResponse("error", RETRY_MESSAGE).to_message()

    # -------------------- waitlist requests --------------------

    def _join_waitlist(self, msg: dict[str, Any]) -> dict[str, Any]:
        venue_id = str(_require(msg, "venue_id"))
        if not self.store.read(VENUES, {"id": venue_id}):
            raise ValidationError(f"venue {venue_id} not found")
        eta = _number(msg, "eta")
        row = self.store.insert_many(
            ENTRIES,
            [
                {
                    "id": msg.get("entry_id") or str(uuid.uuid4()),
                    "venue_id": venue_id,
                    "customer_name": str(msg.get("customer_name") or ""),
                    "party_size": validate_party_size(_require(msg, "party_size")),
                    "status": EntryStatus.WAITING.value,
                    "reservation_type": ReservationType.WALK_IN.value,
                    "position": _integer(msg, "position"),
                    "eta": eta,
                    "original_eta": eta,
                    "patron_delayed": False,
                    "awaiting_merchant_confirmation": False,
                }
            ],
        )[0]
        return {"type": "joined", "entry": row}

    def _request_allocation(self, msg: dict[str, Any]) -> dict[str, Any]:
        result, proposal = self.multi_table.propose(
            str(_require(msg, "venue_id")),
            _number(msg, "time") or self.clock.now(),
            validate_party_size(_require(msg, "party_size")),
            customer_name=str(msg.get("customer_name") or ""),
            user_id=msg.get("user_id"),
        )
        reply = result.to_message()
        if proposal is not None:
            reply["proposal"] = proposal.to_message()
        return reply

    def _confirm_split(self, msg: dict[str, Any]) -> dict[str, Any]:
        proposal = SplitProposal.from_message(_require(msg, "proposal"))
        entries = self.multi_table.confirm(proposal)
        return {
            "type": "split_confirmed",
            "linked_reservation_id": entries[0].linked_reservation_id,
            "entries": [e.to_record() for e in entries],
        }

    def _discard_split(self, msg: dict[str, Any]) -> dict[str, Any]:
        self.multi_table.discard(SplitProposal.from_message(_require(msg, "proposal")))
        return {"type": "split_discarded"}

    def _mark_ready(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.entries.mark_ready(_require(msg, "entry_id"), _number(msg, "deadline")).to_message()

    def _cancel_entry(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.entries.cancel(
            _require(msg, "entry_id"), str(msg.get("reason") or ""), str(msg.get("actor") or "venue")
        ).to_message()

    def _cancel_linked(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.multi_table.cancel_linked(
            _require(msg, "entry_id"), str(msg.get("reason") or ""), str(msg.get("actor") or "patron")
        ).to_message()

    def _extend_grace(self, msg: dict[str, Any]) -> dict[str, Any]:
        return self.extensions.grant_extension(_require(msg, "entry_id"), _number(msg, "minutes")).to_message()

    def _extend_entry_eta(self, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.extensions.extend_eta(
            _require(msg, "entry_id"), _number(msg, "minutes") or 0.0, str(msg.get("reason") or "")
        )
        return {"type": "entry", "applied": True, "entry": entry.to_record(), "group": [entry.id]}

    def _position(self, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.entries.load(_require(msg, "entry_id"))
        view = derive_position_view(entry.id, self.store.read(ENTRIES, {"venue_id": entry.venue_id}))
        if view is None:
            raise NotFound(f"entry {entry.id} not found")
        return view.to_message()

    def _upcoming(self, msg: dict[str, Any]) -> dict[str, Any]:
        upcoming = upcoming_reservations(
            self.store,
            str(_require(msg, "venue_id")),
            self.clock.now(),
            window_minutes=self.settings.upcoming_window_minutes,
        )
        return {"type": "upcoming_reservations", "entries": [e.to_record() for e in upcoming]}

    # -------------------- kitchen requests --------------------

    def _place_order(self, msg: dict[str, Any]) -> dict[str, Any]:
        venue_id = str(_require(msg, "venue_id"))
        if not self.store.read(VENUES, {"id": venue_id}):
            raise ValidationError(f"venue {venue_id} not found")
        minutes = _number(msg, "eta_minutes", 15.0)
        eta = self.clock.now() + minutes * 60
        number = len(self.store.read(ORDERS, {"venue_id": venue_id})) + 1
        row = self.store.insert_many(
            ORDERS,
            [
                {
                    "id": msg.get("order_id") or str(uuid.uuid4()),
                    "venue_id": venue_id,
                    "order_number": _integer(msg, "order_number", number),
                    "customer_name": str(msg.get("customer_name") or ""),
                    "status": OrderStatus.AWAITING_VERIFICATION.value,
                    "eta": eta,
                    "original_eta": eta,
                    "awaiting_merchant_confirmation": False,
                }
            ],
        )[0]
        return {"type": "order_placed", "order": row}


def seed_store(store: InMemoryStore, path: str) -> None:
    """Load `{"venues": [...], "waitlist_entries": [...], "orders": [...]}`."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    for table in (VENUES, ENTRIES, ORDERS):
        rows = data.get(table) or []
        if rows:
            store.insert_many(table, rows)


class MqttVenueService:
    """MQTT adapter around `VenueService` plus its background timers."""

    def __init__(self, *, mqtt: MqttClient, service: VenueService, namespace: str = "venue/v0") -> None:
        # Local imports so unit tests can import VenueService without paho-mqtt.
        from .mqtt_topics import venue_changes, venue_requests

        self._venue_changes = venue_changes
        self._venue_requests = venue_requests

        self.mqtt = mqtt
        self.service = service
        self.namespace = namespace

        self._subs: list[Subscription] = []
        self._countdowns: CountdownSupervisor | None = None
        self._kitchens: dict[str, KitchenMonitor] = {}
        self._sweeper: Ticker | None = None

    def start(self) -> None:
        svc = self.service
        settings = svc.settings

        self.mqtt.on(self._venue_requests(self.namespace), self._handle_message)

        for table in (ENTRIES, ORDERS):
            self._subs.append(svc.store.subscribe(table, None, self._publish_change))

        self._countdowns = CountdownSupervisor(
            machine=svc.entries, interval=settings.countdown_tick_seconds, lock=svc.lock
        ).start()
        for venue in svc.store.read(VENUES):
            self._start_kitchen(venue["id"])
        self._subs.append(svc.store.subscribe(VENUES, None, self._on_venue_change))

        self._sweeper = Ticker(
            settings.sweep_every_seconds,
            lambda: expire_overdue(svc.entries),
            name="expiry-sweep",
            lock=svc.lock,
        ).start()

    def stop(self) -> None:
        """Tear down every timer and subscription. Call before disconnecting MQTT."""
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
        for monitor in self._kitchens.values():
            monitor.stop()
        self._kitchens.clear()
        if self._countdowns is not None:
            self._countdowns.stop()
            self._countdowns = None
        for sub in self._subs:
            sub.close()
        self._subs.clear()

    def _start_kitchen(self, venue_id: str) -> None:
        if venue_id in self._kitchens:
            return
        svc = self.service
        scheduler = OrderDueAlertScheduler(
            notifier=svc.notifier,
            clock=svc.clock,
            timer_factory=thread_timer_factory(),
            late_interval=svc.settings.late_alert_every_seconds,
        )
        self._kitchens[venue_id] = KitchenMonitor(
            store=svc.store,
            venue_id=venue_id,
            scheduler=scheduler,
            interval=svc.settings.kitchen_tick_seconds,
            lock=svc.lock,
        ).start()

    def _on_venue_change(self, event: ChangeEvent) -> None:
        if event.new is not None:
            self._start_kitchen(event.new["id"])

    def _publish_change(self, event: ChangeEvent) -> None:
        rec = event.new if event.new is not None else event.old
        venue_id = (rec or {}).get("venue_id")
        if not venue_id:
            return
        self.mqtt.publish(self._venue_changes(venue_id, event.table, self.namespace), event.to_message())

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply = self.service.handle(msg)
        if not reply_to:
            return
        if corr_id is not None:
            reply = {**reply, "corr_id": corr_id}
        self.mqtt.publish(reply_to, reply)


def main(argv: list[str] | None = None) -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient
    from .notify import MqttNotifier

    parser = argparse.ArgumentParser(description="Venue queue service (MQTT)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="venue/v0")
    parser.add_argument("--seed-file", default=None, help="JSON file with venues/entries/orders to preload")
    parser.add_argument("--ready-window", type=float, default=5.0, help="minutes a ready table is held")
    parser.add_argument("--grace-minutes", type=float, default=5.0, help="one-time patron grace extension")
    parser.add_argument("--max-extension", type=float, default=45.0, help="cap on merchant ETA extensions (min)")
    parser.add_argument("--sweep-every", type=float, default=30.0, help="seconds between expiry sweeps")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = VenueSettings(
        ready_window_minutes=args.ready_window,
        grace_minutes=args.grace_minutes,
        max_extension_minutes=args.max_extension,
        sweep_every_seconds=args.sweep_every,
    )

    mqtt_client = MqttClient(
        client_id=f"venue-service-{uuid.uuid4().hex[:8]}", host=args.mqtt_host, port=args.mqtt_port
    )
    mqtt_client.start()

    store = InMemoryStore()
    if args.seed_file:
        seed_store(store, args.seed_file)

    service = VenueService(
        store=store,
        notifier=MqttNotifier(mqtt=mqtt_client, namespace=args.namespace),
        settings=settings,
    )
    adapter = MqttVenueService(mqtt=mqtt_client, service=service, namespace=args.namespace)
    adapter.start()

    print(f"[venue] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        adapter.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
