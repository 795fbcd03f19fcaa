"""MQTT topic helpers.

We keep topic construction in one place so the service, clients and observers
agree on naming.

Topic layout (v0) under a configurable namespace (default: `venue/v0`):

Request/response:
- `<ns>/venues/requests`
- `<ns>/venues/responses/<client_id>`

Streaming/broadcast:
- `<ns>/venues/<venue_id>/changes/<table>`
    Change-feed events for one venue (`waitlist_entries`, `orders`).
- `<ns>/venues/<venue_id>/notifications`
    Patron/merchant/kitchen notifications.

Several independent deployments can share a broker by changing the namespace
(e.g. `--namespace demo/alice`).
"""

from __future__ import annotations


def venue_requests(namespace: str = "venue/v0") -> str:
    return f"{namespace}/venues/requests"


def venue_responses(client_id: str, namespace: str = "venue/v0") -> str:
    return f"{namespace}/venues/responses/{client_id}"


def venue_changes(venue_id: str, table: str, namespace: str = "venue/v0") -> str:
    """Change-feed stream for one venue and table.

    Use `+` as venue_id or table to subscribe with a wildcard.
    """
    return f"{namespace}/venues/{venue_id}/changes/{table}"


def notifications(venue_id: str, namespace: str = "venue/v0") -> str:
    return f"{namespace}/venues/{venue_id}/notifications"
