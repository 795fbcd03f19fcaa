from __future__ import annotations

# Runtime configuration.
#
# Defaults match what venues get out of the box. The CLI overrides them with
# flags, and a venue record may override the ETA extension cap with
# `settings.max_extension_time` (minutes).

from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class VenueSettings:
    # How long a patron has to show up once their table is ready.
    ready_window_minutes: float = 5.0
    # One-time grace extension a patron may request.
    grace_minutes: float = 5.0
    # Upper bound on merchant ETA extensions, measured from the original ETA.
    max_extension_minutes: float = 45.0

    countdown_tick_seconds: float = 1.0
    kitchen_tick_seconds: float = 5.0
    late_alert_every_seconds: float = 10.0
    sweep_every_seconds: float = 30.0

    # Tables booked within this many minutes of a requested time are busy.
    table_buffer_minutes: float = 30.0
    upcoming_window_minutes: float = 30.0

    def for_venue(self, venue: dict[str, Any] | None) -> "VenueSettings":
        """Apply per-venue overrides from a venue record."""
        if not venue:
            return self
        raw = (venue.get("settings") or {}).get("max_extension_time")
        if raw is None:
            return self
        return replace(self, max_extension_minutes=float(raw))
