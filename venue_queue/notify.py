"""Notification collaborator.

The core only knows the call contract: `notify(title, body, options)` and
`vibrate(pattern, options)`. Delivery is best-effort; a failed notification never
fails the transition that triggered it (`SafeNotifier`).

`options` keys used by the core:
- `audience`: `patron`, `merchant` or `kitchen`
- `venue_id`, `entry_id` / `order_id`
- `tag`: stable tag so a client can replace a previous notice
- `require_interaction`: keep the notice on screen until dismissed
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

DEFAULT_VIBRATION = (200, 100, 200)
TABLE_READY_VIBRATION = (200, 100, 200, 100, 200)
URGENT_VIBRATION = (300, 100, 300, 100, 300)


class Notifier(Protocol):
    def notify(self, title: str, body: str, options: dict[str, Any] | None = None) -> None: ...

    def vibrate(self, pattern: Sequence[int], options: dict[str, Any] | None = None) -> None: ...


class SafeNotifier:
    """Wrap a notifier so delivery failures are logged and swallowed."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def notify(self, title: str, body: str, options: dict[str, Any] | None = None) -> None:
        try:
            self.inner.notify(title, body, options)
        except Exception:
            logger.warning("notification %r not delivered", title, exc_info=True)

    def vibrate(self, pattern: Sequence[int], options: dict[str, Any] | None = None) -> None:
        try:
            self.inner.vibrate(pattern, options)
        except Exception:
            logger.warning("vibration not delivered", exc_info=True)


def best_effort(notifier: Notifier) -> Notifier:
    return notifier if isinstance(notifier, SafeNotifier) else SafeNotifier(notifier)


class LogNotifier:
    """Notifier that only writes to the log (no broker)."""

    def notify(self, title: str, body: str, options: dict[str, Any] | None = None) -> None:
        logger.info("notify %s: %s %s", title, body, options or {})

    def vibrate(self, pattern: Sequence[int], options: dict[str, Any] | None = None) -> None:
        logger.info("vibrate %s %s", list(pattern), options or {})


class MqttNotifier:
    """Publish notifications on the venue's notification topic."""

    def __init__(self, *, mqtt: MqttClient, namespace: str = "venue/v0") -> None:
        from .mqtt_topics import notifications

        self._notifications = notifications
        self.mqtt = mqtt
        self.namespace = namespace

    def _topic(self, options: dict[str, Any]) -> str:
        # Without a venue the notice goes to the catch-all topic.
        return self._notifications(str(options.get("venue_id") or "all"), self.namespace)

    def notify(self, title: str, body: str, options: dict[str, Any] | None = None) -> None:
        opts = dict(options or {})
        self.mqtt.publish(
            self._topic(opts),
            {"type": "notification", "title": title, "body": body, "options": opts, "ts": time.time()},
        )

    def vibrate(self, pattern: Sequence[int], options: dict[str, Any] | None = None) -> None:
        opts = dict(options or {})
        self.mqtt.publish(
            self._topic(opts),
            {"type": "vibrate", "pattern": list(pattern), "options": opts, "ts": time.time()},
        )
