from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

EVENTS_INGESTED = Counter(
    "billing_events_ingested_total",
    "Provider events received, by ingest result",
    ["source", "result"],
)
EVENTS_PROCESSED = Counter(
    "billing_events_processed_total",
    "Processing attempts, by outcome",
    ["event_type", "outcome"],
)
EVENT_APPLY_LATENCY = Histogram(
    "billing_event_apply_seconds",
    "Time spent applying one event to the ledger",
    ["event_type"],
)
NOTIFICATIONS = Counter(
    "billing_notifications_total",
    "Reconciliation notifications handed to the gateway, by result",
    ["backend", "result"],
)
