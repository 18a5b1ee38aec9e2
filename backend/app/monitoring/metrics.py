"""Metric definitions for the signalling relay."""

from __future__ import annotations

from .registry import registry


relay_active_connections = registry.gauge(
    "relay_active_connections",
    "Number of websocket connections currently registered with the relay.",
)

relay_active_rooms = registry.gauge(
    "relay_active_rooms",
    "Number of rooms with at least one member.",
)

relay_messages_total = registry.counter(
    "relay_messages_total",
    "Count of relay messages accepted from or delivered to clients.",
    label_names=("direction", "type"),
)

relay_messages_rejected_total = registry.counter(
    "relay_messages_rejected_total",
    "Inbound frames discarded by the message router.",
    label_names=("reason",),
)

relay_signals_dropped_total = registry.counter(
    "relay_signals_dropped_total",
    "Signals that could not be delivered because the target was missing or closed.",
)


def reset_metrics() -> None:
    """Zero every relay metric."""

    for metric in (
        relay_active_connections,
        relay_active_rooms,
        relay_messages_total,
        relay_messages_rejected_total,
        relay_signals_dropped_total,
    ):
        metric.reset()
