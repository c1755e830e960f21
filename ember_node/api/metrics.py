"""Prometheus metrics for the Ember operator node.

Exposed via the /metrics endpoint.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- Request metrics ---
REQUEST_COUNT = Counter(
    "ember_node_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "ember_node_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# --- Selection events ---
SELECTION_EVENTS = Counter(
    "ember_node_selection_events_total",
    "Selection events consumed by the monitor",
    ["result"],  # leader, follower, stale, malformed
)

SUBSCRIPTION_RECONNECTS = Counter(
    "ember_node_subscription_reconnects_total",
    "Event subscription failures followed by a resubscribe",
)

MONITOR_STATE = Gauge(
    "ember_node_monitor_state",
    "Selection monitor state (1 for the active state)",
    ["state"],  # disconnected, listening, processing_event
)

# --- Distribution ---
DISTRIBUTIONS = Counter(
    "ember_node_distributions_total",
    "Share distributions run as leader",
    ["status"],  # complete, partial_failure, quorum_unreachable, directory_unavailable, failed
)

DISTRIBUTION_DURATION = Histogram(
    "ember_node_distribution_duration_seconds",
    "End-to-end share distribution duration",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

DELIVERIES = Counter(
    "ember_node_share_deliveries_total",
    "Per-peer share delivery attempts",
    ["outcome"],  # delivered, timed_out, rejected
)

DIRECTORY_FAILURES = Counter(
    "ember_node_directory_failures_total",
    "Failed operator directory queries",
)

# --- Follower side ---
SHARES_ACCEPTED = Counter(
    "ember_node_shares_accepted_total",
    "Inbound shares accepted and stored",
)

SHARES_REJECTED = Counter(
    "ember_node_shares_rejected_total",
    "Inbound shares rejected",
    ["reason"],  # duplicate, stale, invalid, signature, sender
)

# --- Chain ---
RPC_FAILOVERS = Counter(
    "ember_node_rpc_failovers_total",
    "RPC endpoint failover events",
)

CIRCUIT_BREAKER_STATE = Gauge(
    "ember_node_circuit_breaker_open",
    "Whether a circuit breaker is open (1) or closed (0)",
    ["target"],  # rpc, peer_<address>
)


def metrics_response() -> bytes:
    """Generate Prometheus-compatible metrics text."""
    return generate_latest()
