import pytest

from venue_queue.client import parse_fields
from venue_queue.errors import ErrorResponse, RETRY_MESSAGE, ExternalFailure, PolicyViolation
from venue_queue.models import ENTRIES, ChangeEvent
from venue_queue.notify import MqttNotifier
from venue_queue.mqtt_topics import notifications, venue_changes, venue_requests, venue_responses
from venue_queue.service import MqttVenueService, VenueService


def test_topic_helpers():
    ns = "demo/v0"
    assert venue_requests(ns) == "demo/v0/venues/requests"
    assert venue_responses("c1", ns) == "demo/v0/venues/responses/c1"
    assert venue_changes("v1", "orders", ns) == "demo/v0/venues/v1/changes/orders"
    assert notifications("v1", ns) == "demo/v0/venues/v1/notifications"


def test_parse_fields_reads_json_values():
    assert parse_fields(["entry_id=e1", "minutes=5", "flag=true"]) == {"entry_id": "e1", "minutes": 5, "flag": True}
    with pytest.raises(ValueError):
        parse_fields(["oops"])


def test_error_envelope():
    assert ErrorResponse.from_exception(PolicyViolation("no more")).to_message(corr_id="x") == {
        "type": "error",
        "code": "policy_violation",
        "message": "no more",
        "corr_id": "x",
    }
    # Store internals never leak to users.
    assert ErrorResponse.from_exception(ExternalFailure("db down")).message == RETRY_MESSAGE


class FakeMqtt:
    def __init__(self):
        self.published = []

    def publish(self, topic, msg):
        self.published.append((topic, msg))


def test_replies_carry_correlation_id(store, notifier, clock, venue):
    mqtt = FakeMqtt()
    adapter = MqttVenueService(mqtt=mqtt, service=VenueService(store=store, notifier=notifier, clock=clock))
    adapter._handle_message(venue_requests(), {"type": "mark_ready", "reply_to": "r/1", "corr_id": "abc"})
    assert mqtt.published == [
        ("r/1", {"type": "error", "code": "bad_request", "message": "entry_id required", "corr_id": "abc"})
    ]


def test_changes_are_published_per_venue(store, notifier, clock, venue, make_entry):
    mqtt = FakeMqtt()
    adapter = MqttVenueService(mqtt=mqtt, service=VenueService(store=store, notifier=notifier, clock=clock))
    make_entry(id="e1")
    adapter._publish_change(ChangeEvent(ENTRIES, "insert", None, store.read(ENTRIES, {"id": "e1"})[0]))
    topic, msg = mqtt.published[0]
    assert topic == "venue/v0/venues/v1/changes/waitlist_entries"
    assert msg["type"] == "change"
    assert msg["new"]["id"] == "e1"


def test_vibrations_go_to_the_venue_topic():
    mqtt = FakeMqtt()
    notifier = MqttNotifier(mqtt=mqtt)
    notifier.vibrate([200, 100, 200], {"venue_id": "v1", "audience": "patron"})
    notifier.vibrate([300])
    assert [topic for topic, _ in mqtt.published] == [notifications("v1"), notifications("all")]
    assert mqtt.published[0][0] == "venue/v0/venues/v1/notifications"
    assert mqtt.published[0][1]["pattern"] == [200, 100, 200]
