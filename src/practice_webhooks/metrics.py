from prometheus_client import Counter, Gauge, Histogram

EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Total Stripe webhook deliveries received",
    ["result"],
)

QUEUE_DEPTH = Gauge(
    "webhook_queue_depth",
    "Current number of events waiting for dispatch",
)

PROCESSING_DURATION = Histogram(
    "webhook_processing_duration_seconds",
    "Handler execution duration in seconds",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

PROCESSING_ERRORS_TOTAL = Counter(
    "webhook_processing_errors_total",
    "Total number of handler failures",
)

DISPATCH_TOTAL = Counter(
    "webhook_dispatch_total",
    "Dispatch attempts by outcome",
    ["outcome"],
)

EXHAUSTED_TOTAL = Counter(
    "webhook_events_exhausted_total",
    "Events that used up every retry and need manual intervention",
)
