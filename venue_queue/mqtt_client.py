"""paho-mqtt connection used by the venue service and the request client.

Messages are JSON objects on both sides. Two ways in:

- handlers registered with `on(topic_filter, handler)` receive every message
  whose topic matches the filter (MQTT wildcards allowed);
- `request()` publishes with a fresh `corr_id` and blocks until the reply with
  that id arrives on the caller's response topic.

Subscriptions are remembered and re-issued on every (re)connect, so a broker
restart does not silently leave the service deaf. QoS is 0 throughout: a
change event is superseded by the next one, and requests are retried by the
caller when they time out.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .errors import ExternalFailure

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]


class MqttClient:
    def __init__(self, *, client_id: str, host: str, port: int, keepalive: int = 30) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._lock = threading.Lock()
        self._topics: set[str] = set()
        self._routes: list[tuple[str, MessageHandler]] = []
        # corr_id -> single-slot reply queue
        self._waiting: dict[str, "queue.Queue[dict[str, Any]]"] = {}
        self._connected = threading.Event()
        self._running = False

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self, *, wait: float = 5.0) -> None:
        """Connect and run paho's network loop in the background."""
        if self._running:
            return
        try:
            self._client.connect(self.host, self.port, keepalive=self.keepalive)
        except OSError as e:
            raise ExternalFailure(f"cannot reach MQTT broker at {self.host}:{self.port}: {e}") from e
        self._client.loop_start()
        self._running = True
        if not self._connected.wait(wait):
            logger.warning("%s: still waiting for the broker to accept the connection", self.client_id)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._client.disconnect()
        self._client.loop_stop()

    def subscribe(self, topic: str) -> None:
        with self._lock:
            self._topics.add(topic)
        if self.connected:
            self._client.subscribe(topic, qos=0)

    def on(self, topic_filter: str, handler: MessageHandler) -> None:
        """Route messages matching `topic_filter` to `handler` (subscribes too)."""
        with self._lock:
            self._routes.append((topic_filter, handler))
        self.subscribe(topic_filter)

    def publish(self, topic: str, message: dict[str, Any]) -> None:
        payload = json.dumps(message, separators=(",", ":"), default=str)
        self._client.publish(topic, payload=payload.encode("utf-8"), qos=0)

    def request(
        self, *, request_topic: str, response_topic: str, message: dict[str, Any], timeout: float = 5.0
    ) -> dict[str, Any]:
        """Send `message` and wait for the reply carrying the same `corr_id`.

        The caller must already be subscribed to `response_topic`. Raises
        `ExternalFailure` when nothing comes back in time.
        """
        corr_id = uuid.uuid4().hex
        slot: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        with self._lock:
            self._waiting[corr_id] = slot
        try:
            self.publish(request_topic, {**message, "corr_id": corr_id, "reply_to": response_topic})
            return slot.get(timeout=timeout)
        except queue.Empty:
            raise ExternalFailure(f"no reply to {message.get('type')!r} within {timeout:g}s") from None
        finally:
            with self._lock:
                self._waiting.pop(corr_id, None)

    # -------------------- paho callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.error("%s: broker refused connection (%s)", self.client_id, reason_code)
            return
        with self._lock:
            topics = sorted(self._topics)
        for topic in topics:
            client.subscribe(topic, qos=0)
        self._connected.set()
        logger.info("%s: connected to %s:%s (%d subscriptions)", self.client_id, self.host, self.port, len(topics))

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        self._connected.clear()
        if self._running:
            logger.warning("%s: lost broker connection (%s), paho will reconnect", self.client_id, reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            data = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.debug("dropping malformed payload on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        corr_id = data.get("corr_id")
        if isinstance(corr_id, str) and "reply_to" not in data:
            with self._lock:
                slot = self._waiting.get(corr_id)
            if slot is not None:
                try:
                    slot.put_nowait(data)
                except queue.Full:
                    pass
                return

        with self._lock:
            routes = list(self._routes)
        for topic_filter, handler in routes:
            if not mqtt.topic_matches_sub(topic_filter, msg.topic):
                continue
            try:
                handler(msg.topic, data)
            except Exception:
                # A failing handler must not take the network loop down.
                logger.exception("handler for %s failed on %s", topic_filter, msg.topic)
