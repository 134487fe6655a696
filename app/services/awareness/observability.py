"""Prometheus metrics for the awareness campaign core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

TRACKING_EVENTS = Counter(
    "awareness_tracking_events_total",
    "Tracking events folded into interaction records",
    ["event_type", "outcome"],  # outcome: recorded, duplicate, orphan
)

ORPHAN_EVENTS = Counter(
    "awareness_orphan_events_total",
    "Tracking events that referenced an unknown campaign",
    ["event_type"],
)

DISPATCHED_BATCHES = Counter(
    "awareness_dispatched_batches_total",
    "Dispatch plan batches handed to the delivery collaborator",
    ["status"],  # status: delivered, skipped, failed
)

CAMPAIGN_TRANSITIONS = Counter(
    "awareness_campaign_transitions_total",
    "Campaign lifecycle transitions",
    ["action", "to_status"],
)

LIVE_CHANNEL_RECONNECTS = Counter(
    "awareness_live_channel_reconnects_total",
    "Reconnect attempts made by the live update channel client",
)

LIVE_CONNECTIONS = Gauge(
    "awareness_live_connections",
    "Open live update websocket connections on this instance",
)
