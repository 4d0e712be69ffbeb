from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

# ── Billing ──────────────────────────────────────────────

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Provider webhook events by type and outcome",
    ["event_type", "outcome"],
)
CYCLE_RESETS = Counter(
    "billing_cycle_resets_total",
    "Usage counter resets by trigger",
    ["trigger"],
)
SWEEP_FAILURES = Counter(
    "billing_sweep_failures_total",
    "Accounts that failed or timed out during a billing cycle sweep",
)
RECORDS_OVER_QUOTA = Counter(
    "usage_records_over_quota_total",
    "Feedback records stored hidden because the account was over quota",
)
VISIBILITY_RECOMPUTE_FAILURES = Counter(
    "visibility_recompute_failures_total",
    "Post-commit visibility recomputes that raised",
    ["trigger"],
)
