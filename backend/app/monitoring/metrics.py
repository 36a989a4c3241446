"""Metric definitions for the change feed and request limits."""

from __future__ import annotations

from .registry import registry


change_events_total = registry.counter(
    "parley_change_events_total",
    "Change events published to the feed.",
    label_names=("table", "action", "origin"),
)

change_publish_errors_total = registry.counter(
    "parley_change_publish_errors_total",
    "Failures while forwarding change events to the cross-node transport.",
    label_names=("backend", "reason"),
)

change_subscriptions = registry.gauge(
    "parley_change_subscriptions",
    "Active change-feed subscriptions held by this node.",
    label_names=("table",),
)

realtime_connections = registry.gauge(
    "parley_realtime_connections",
    "Open change-feed websocket connections on this node.",
)

realtime_transport_restarts_total = registry.counter(
    "parley_realtime_transport_restarts_total",
    "Recoveries of the cross-node transport after a failure.",
    label_names=("backend", "reason"),
)

rate_limited_requests_total = registry.counter(
    "parley_rate_limited_requests_total",
    "Requests rejected by the per-user rate limiter.",
    label_names=("action",),
)
