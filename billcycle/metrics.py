from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

INVOICES_GENERATED = Counter(
    "billing_invoices_generated_total",
    "Invoices generated by the billing cycle",
)
BILLING_CYCLE_FAILURES = Counter(
    "billing_cycle_failures_total",
    "Billing cycle runs that failed for a subscription",
    ["error"],
)
PAYMENTS_APPLIED = Counter(
    "billing_payments_applied_total",
    "Payments applied to invoices",
    ["method"],
)
PAYMENTS_REJECTED = Counter(
    "billing_payments_rejected_total",
    "Payments rejected or failed",
    ["reason"],
)
SUBSCRIPTIONS_SUSPENDED = Counter(
    "billing_subscriptions_suspended_total",
    "Subscriptions suspended for non-payment",
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
