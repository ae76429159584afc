"""
Operational Metrics for the payment reconciliation service

Prometheus counters and histograms for webhook intake, finalization,
tax reconciliation and the background job queue.
"""

from prometheus_client import Counter, Histogram

# --- API Metrics ---
API_ERRORS_TOTAL = Counter(
    "reconciler_api_errors_total",
    "Total number of API errors returned to callers",
    ["path", "method", "status_code"],
)

# --- Webhook Intake ---
WEBHOOK_EVENTS_TOTAL = Counter(
    "reconciler_webhook_events_total",
    "Webhook events processed, by kind and outcome",
    ["event_type", "outcome"],  # outcome: processed, ignored, failed
)

WEBHOOK_REJECTIONS_TOTAL = Counter(
    "reconciler_webhook_rejections_total",
    "Webhook requests rejected before dispatch",
    ["reason"],  # content_type, too_large, rate_limited, signature
)

WEBHOOK_PROCESSING_DURATION = Histogram(
    "reconciler_webhook_processing_seconds",
    "Time spent dispatching a verified webhook event",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

# --- Finalization ---
FINALIZATIONS_TOTAL = Counter(
    "reconciler_finalizations_total",
    "Payment finalization attempts by source and result",
    ["source", "result"],  # result: created, renewed, duplicate, missing_identity
)

METADATA_RESOLUTION_TOTAL = Counter(
    "reconciler_metadata_resolution_total",
    "Checkout metadata resolutions by terminal strategy",
    ["strategy", "complete"],
)

# --- Tax Reconciliation ---
TAX_RECONCILIATION_TOTAL = Counter(
    "reconciler_tax_reconciliation_total",
    "Tax extraction outcomes by method",
    ["method"],  # line_items, invoice_tax, total_details, breakdown, estimate, checkout_session, none
)

TAX_RECHECKS_TOTAL = Counter(
    "reconciler_tax_rechecks_total",
    "Deferred tax rechecks by outcome",
    ["outcome"],  # scheduled, recorded, already_recorded, still_missing
)

# --- Queue & Scheduling Metrics ---
BACKGROUND_JOBS_ENQUEUED = Counter(
    "reconciler_jobs_enqueued_total",
    "Total number of background jobs enqueued",
    ["job_type"],
)

BACKGROUND_JOB_DURATION = Histogram(
    "reconciler_job_duration_seconds",
    "Duration of background job execution",
    ["job_type", "status"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120),
)

# --- Notifications ---
NOTIFICATIONS_TOTAL = Counter(
    "reconciler_notifications_total",
    "Renewal reminders by channel and result",
    ["channel", "result"],
)
