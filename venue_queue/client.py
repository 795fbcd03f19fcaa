from __future__ import annotations

# One-shot request client.
#
# Connects, sends one request to the venue service, prints the reply and
# exits. Handy for driving a running service by hand:
#
#   venue-queue request mark_ready --field entry_id=e1
#   venue-queue request extend_grace --field entry_id=e1 --field minutes=5

import argparse
import json
import time
from typing import Any

from .errors import ExternalFailure
from .mqtt_client import MqttClient
from .mqtt_topics import venue_requests, venue_responses


def parse_fields(pairs: list[str]) -> dict[str, Any]:
    """`key=value` pairs; values are read as JSON when they parse, else strings."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected key=value, got {pair!r}")
        try:
            fields[key] = json.loads(raw)
        except ValueError:
            fields[key] = raw
    return fields


def send_request(
    *, mqtt_host: str, mqtt_port: int, namespace: str, message: dict[str, Any], timeout: float = 5.0
) -> dict[str, Any]:
    # Unique client id so several clients can run at once.
    client_id = f"client-{message.get('type', 'request')}-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = venue_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=venue_requests(namespace),
            response_topic=reply_topic,
            message=message,
            timeout=timeout,
        )
    finally:
        mqtt.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Send one request to the venue service (MQTT)")
    parser.add_argument("type", help="request type, e.g. mark_ready, extend_grace, order_ready")
    parser.add_argument("--field", action="append", default=[], help="request field as key=value (repeatable)")
    parser.add_argument("--mqtt-host", default="127.0.0.1")
    parser.add_argument("--mqtt-port", type=int, default=1883)
    parser.add_argument("--namespace", default="venue/v0")
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args(argv)

    try:
        message = {**parse_fields(args.field), "type": args.type}
    except ValueError as e:
        parser.error(str(e))

    try:
        resp = send_request(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            message=message,
            timeout=args.timeout,
        )
    except ExternalFailure as e:
        print(f"[client] {e}")
        raise SystemExit(1)
    if resp.get("type") == "error":
        print(f"[client] error {resp.get('code')}: {resp.get('message')}")
    else:
        print(json.dumps(resp, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
