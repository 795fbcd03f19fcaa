"""Kitchen order state machine.

    awaiting_verification -> placed -> in_prep -> ready -> collected
    awaiting_verification | placed -> rejected
    awaiting_verification | placed | in_prep | ready -> cancelled
    ready -> no_show

Rejecting or cancelling an order clears its ETA so it never counts towards
due-time analytics. Writes are conditional on the status the transition was
validated against; a conflicting writer wins and the caller gets the current
record back with `applied=False`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .errors import InvalidTransition, ValidationError, WriteConflict
from .extension import effective_settings, extended_eta
from .models import ORDERS, Order, OrderStatus
from .notify import DEFAULT_VIBRATION, LogNotifier, Notifier, best_effort
from .settings import VenueSettings
from .store import Store, read_one
from .timers import Clock, SystemClock

logger = logging.getLogger(__name__)


class OrderAction(str, Enum):
    VERIFY = "verify"
    REJECT = "reject"
    START_PREP = "start_prep"
    MARK_READY = "mark_ready"
    CONFIRM_PICKUP = "confirm_pickup"
    COLLECT = "collect"
    MARK_NO_SHOW = "mark_no_show"
    CANCEL = "cancel"
    EXTEND = "extend"


S = OrderStatus
A = OrderAction

ORDER_TRANSITIONS: dict[tuple[OrderStatus, OrderAction], OrderStatus] = {
    (S.AWAITING_VERIFICATION, A.VERIFY): S.PLACED,
    (S.AWAITING_VERIFICATION, A.REJECT): S.REJECTED,
    (S.PLACED, A.REJECT): S.REJECTED,
    (S.PLACED, A.START_PREP): S.IN_PREP,
    (S.PLACED, A.MARK_READY): S.READY,
    (S.IN_PREP, A.MARK_READY): S.READY,
    (S.READY, A.CONFIRM_PICKUP): S.READY,
    (S.READY, A.COLLECT): S.COLLECTED,
    (S.READY, A.MARK_NO_SHOW): S.NO_SHOW,
    (S.PLACED, A.EXTEND): S.PLACED,
    (S.IN_PREP, A.EXTEND): S.IN_PREP,
    (S.AWAITING_VERIFICATION, A.CANCEL): S.CANCELLED,
    (S.PLACED, A.CANCEL): S.CANCELLED,
    (S.IN_PREP, A.CANCEL): S.CANCELLED,
    (S.READY, A.CANCEL): S.CANCELLED,
}


def next_order_status(status: OrderStatus, action: OrderAction) -> OrderStatus:
    try:
        return ORDER_TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidTransition(
            f"cannot {action.value.replace('_', ' ')} an order that is {status.value}"
        ) from None


@dataclass(frozen=True)
class OrderUpdate:
    order: Order
    applied: bool

    def to_message(self) -> dict[str, Any]:
        return {"type": "order", "applied": self.applied, "order": self.order.to_record()}


class OrderStateMachine:
    def __init__(
        self,
        store: Store,
        *,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        settings: VenueSettings | None = None,
    ) -> None:
        self.store = store
        self.notifier = best_effort(notifier or LogNotifier())
        self.clock = clock or SystemClock()
        self.settings = settings or VenueSettings()

    def load(self, order: Order | str) -> Order:
        order_id = order.id if isinstance(order, Order) else str(order)
        return Order.from_record(read_one(self.store, ORDERS, order_id))

    def _apply(
        self,
        order: Order | str,
        action: OrderAction,
        patch: Mapping[str, Any] | None = None,
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> OrderUpdate:
        current = self.load(order)
        target = next_order_status(current.status, action)
        conditions = {"status": current.status.value, **(expect or {})}
        try:
            row = self.store.write(
                ORDERS, current.id, {"status": target.value, **(patch or {})}, expect=conditions
            )
        except WriteConflict:
            latest = self.load(current.id)
            logger.info(
                "order %s: %s lost to a concurrent change (now %s)", current.id, action.value, latest.status.value
            )
            return OrderUpdate(latest, applied=False)
        updated = Order.from_record(row)
        logger.info("order %s: %s -> %s", updated.id, current.status.value, updated.status.value)
        return OrderUpdate(updated, applied=True)

    def verify(self, order: Order | str) -> OrderUpdate:
        return self._apply(order, A.VERIFY)

    def reject(self, order: Order | str, reason: str | None = None) -> OrderUpdate:
        patch: dict[str, Any] = {"eta": None}
        if reason:
            patch["notes"] = f"Rejected: {reason}"
        return self._apply(order, A.REJECT, patch)

    def start_prep(self, order: Order | str) -> OrderUpdate:
        return self._apply(order, A.START_PREP)

    def mark_ready(self, order: Order | str) -> OrderUpdate:
        update = self._apply(order, A.MARK_READY)
        if update.applied:
            o = update.order
            self.notifier.notify(
                "Your Order is Ready!",
                f"Order #{o.order_number} is ready for pickup",
                self._options(o, "patron", tag="order-ready", require_interaction=True),
            )
            self.notifier.vibrate(DEFAULT_VIBRATION, self._options(o, "patron", tag="order-ready"))
        return update

    def confirm_pickup(self, order: Order | str) -> OrderUpdate:
        """Patron is at the counter; only once per order."""
        current = self.load(order)
        if current.awaiting_merchant_confirmation:
            raise InvalidTransition(f"pickup of order #{current.order_number} is already confirmed")
        update = self._apply(
            current,
            A.CONFIRM_PICKUP,
            {"awaiting_merchant_confirmation": True},
            expect={"awaiting_merchant_confirmation": False},
        )
        if update.applied:
            o = update.order
            self.notifier.notify(
                "Patron at Counter",
                f"Order #{o.order_number} is being collected",
                self._options(o, "merchant", tag="order-pickup"),
            )
        return update

    def collect(self, order: Order | str) -> OrderUpdate:
        return self._apply(order, A.COLLECT, {"awaiting_merchant_confirmation": False})

    def mark_no_show(self, order: Order | str) -> OrderUpdate:
        return self._apply(order, A.MARK_NO_SHOW, {"awaiting_merchant_confirmation": False})

    def cancel(self, order: Order | str, reason: str) -> OrderUpdate:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a cancellation reason is required")
        update = self._apply(order, A.CANCEL, {"eta": None, "notes": f"Cancelled: {reason}"})
        if update.applied:
            self.notifier.notify(
                "Order Cancelled", reason, self._options(update.order, "patron", tag="order-cancelled")
            )
        return update

    def extend_eta(self, order: Order | str, minutes: float, reason: str) -> OrderUpdate:
        current = self.load(order)
        if current.eta is None:
            raise ValidationError("order has no ETA to extend")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("an extension reason is required")
        next_order_status(current.status, A.EXTEND)
        settings = effective_settings(self.store, current.venue_id, self.settings)
        new_eta = extended_eta(
            current_eta=current.eta,
            original_eta=current.original_eta,
            minutes=float(minutes),
            max_minutes=settings.max_extension_minutes,
        )
        patch: dict[str, Any] = {"eta": new_eta, "notes": f"Extended: {reason}"}
        if current.original_eta is None:
            patch["original_eta"] = current.eta
        update = self._apply(current, A.EXTEND, patch, expect={"eta": current.eta})
        if update.applied:
            self.notifier.notify(
                "ETA Extended",
                f"Order will be ready {float(minutes):g} minutes later - {reason}",
                self._options(update.order, "patron", tag="order-eta"),
            )
        return update

    @staticmethod
    def _options(order: Order, audience: str, **extra: Any) -> dict[str, Any]:
        return {"audience": audience, "venue_id": order.venue_id, "order_id": order.id, **extra}
