"""Prometheus metrics for the ingest core."""

from prometheus_client import Counter, Gauge, Histogram

OPERATIONS_TOTAL = Counter(
    "media_relay_operations_total",
    "Operations reaching a terminal status",
    ["type", "status"],
)

OPERATION_DURATION = Histogram(
    "media_relay_operation_duration_seconds",
    "Wall time from operation start to terminal status",
    ["type"],
    buckets=[0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600],
)

DELIVERIES_TOTAL = Counter(
    "media_relay_deliveries_total",
    "Artifacts delivered, by method",
    ["method"],
)

DELIVERY_FAILURES_TOTAL = Counter(
    "media_relay_delivery_failures_total",
    "Delivery strategy failures that fell through to the next strategy",
    ["method"],
)

COALESCED_REQUESTS_TOTAL = Counter(
    "media_relay_coalesced_requests_total",
    "Fetch requests that joined an in-flight fetch for the same key",
)

LEDGER_HITS_TOTAL = Counter(
    "media_relay_ledger_hits_total",
    "Fetch requests answered from the URL ledger",
)

INFLIGHT_FETCHES = Gauge(
    "media_relay_inflight_fetches",
    "Upstream fetches currently in flight",
)

STUCK_OPERATIONS_REAPED_TOTAL = Counter(
    "media_relay_stuck_operations_reaped_total",
    "Operations force-failed by the stuck sweep",
)

THROTTLED_REQUESTS_TOTAL = Counter(
    "media_relay_throttled_requests_total",
    "Requests refused by the per-user cooldown",
)

DEFERRED_DOWNLOADS_TOTAL = Counter(
    "media_relay_deferred_downloads_total",
    "Deferred download requests, by outcome",
    ["outcome"],
)
