"""
Prometheus metrics configuration for Thread Relay.

Defines custom metrics for streaming, batching and persistence.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "threadrelay"


# ============================================================================
# Stream Metrics
# ============================================================================

stream_sessions_active = Gauge(
    f"{NAMESPACE}_stream_sessions_active",
    "Number of stream sessions currently relaying a reply",
)

stream_sessions_total = Counter(
    f"{NAMESPACE}_stream_sessions_total",
    "Stream sessions by terminal state",
    ["state"],  # "ended", "errored", "disconnected"
)

stream_tokens_total = Counter(
    f"{NAMESPACE}_stream_tokens_total",
    "Text deltas forwarded to clients",
)


# ============================================================================
# Batch Metrics
# ============================================================================

batch_flushes_total = Counter(
    f"{NAMESPACE}_batch_flushes_total",
    "Batch flush executions by outcome",
    ["outcome"],  # "success", "dropped"
)

batch_flush_retries_total = Counter(
    f"{NAMESPACE}_batch_flush_retries_total",
    "Failed batch write attempts that were retried",
)

batch_dropped_items_total = Counter(
    f"{NAMESPACE}_batch_dropped_items_total",
    "Buffered items permanently lost after exhausting retries",
)

batch_size_items = Histogram(
    f"{NAMESPACE}_batch_size_items",
    "Items written per successful batch",
    buckets=(1, 2, 5, 10, 20, 50, 100),
)

batch_buffered_items = Gauge(
    f"{NAMESPACE}_batch_buffered_items",
    "Items currently waiting in batch buffers",
)


# ============================================================================
# Database Metrics
# ============================================================================

db_pool_connections = Gauge(
    f"{NAMESPACE}_db_pool_connections",
    "Number of database connections by state",
    ["state"],  # "free" or "used"
)

db_query_duration_seconds = Histogram(
    f"{NAMESPACE}_db_query_duration_seconds",
    "Database query duration in seconds",
    ["query_type"],  # "write_batch", "create_conversation", "list_messages", ...
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)


# ============================================================================
# External Service Metrics
# ============================================================================

provider_call_duration_seconds = Histogram(
    f"{NAMESPACE}_provider_call_duration_seconds",
    "AI thread provider call duration in seconds",
    ["operation"],  # "create_thread", "append_message"
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

provider_errors_total = Counter(
    f"{NAMESPACE}_provider_errors_total",
    "AI thread provider failures",
    ["operation", "kind"],  # kind: "timeout", "api_error"
)

image_uploads_total = Counter(
    f"{NAMESPACE}_image_uploads_total",
    "Image uploads by outcome",
    ["outcome"],  # "success", "failed", "timeout"
)
