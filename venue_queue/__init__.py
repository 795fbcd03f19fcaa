"""Real-time service queues for a venue (MQTT-based).

The core coordinates:
- waitlist/reservation entries through their ready/deadline lifecycle
  (state machine, countdowns, one-time grace extension)
- multi-table bookings created and cancelled as one unit
- kitchen orders, with phased and de-duplicated due-time alerts

State lives in an external store with a change feed; the service exposes the
operations over MQTT request/response topics. See README for how to run.
"""
