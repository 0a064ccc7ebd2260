"""Prometheus metrics for the sync core and presence endpoint.

The module bundles all metrics in one place so importing side-effects
(metric registration) happen exactly once per process.  Services and routers
simply ``from stacked.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge

sync_events_emitted_total = Counter(
    "sync_events_emitted_total",
    "Sync events emitted by this process",
    labelnames=("topic",),
)

sync_events_applied_total = Counter(
    "sync_events_applied_total",
    "Remote sync events applied, by delivery path",
    labelnames=("topic", "path"),
)

sync_events_dropped_total = Counter(
    "sync_events_dropped_total",
    "Sync events discarded before application",
    labelnames=("reason",),
)

presence_heartbeat_failures_total = Counter(
    "presence_heartbeat_failures_total",
    "Heartbeat requests that failed to reach the presence endpoint",
)

# ------------------------------------------------------------------
# Gauges (current state) -------------------------------------------
# ------------------------------------------------------------------

presence_connected_clients = Gauge(
    "presence_connected_clients",
    "Live sessions tracked by the presence registry",
)

socket_relay_connections = Gauge(
    "socket_relay_connections",
    "Clients connected to the socket relay",
)

__all__ = [
    "presence_connected_clients",
    "presence_heartbeat_failures_total",
    "socket_relay_connections",
    "sync_events_applied_total",
    "sync_events_dropped_total",
    "sync_events_emitted_total",
]
