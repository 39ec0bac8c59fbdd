"""Prometheus metrics for the monitoring pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("restocked", "Restocked monitoring pipeline info")
app_info.info({"version": "0.1.0", "name": "restocked"})

# Check cycle metrics
check_runs_total = Counter(
    "check_runs_total",
    "Total number of check cycles",
    ["trigger", "status"],
)

check_run_duration_seconds = Histogram(
    "check_run_duration_seconds",
    "Wall time of a check cycle",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

product_checks_total = Counter(
    "product_checks_total",
    "Total number of per-product checks",
    ["outcome"],
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Time spent in the extractor per product",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

variants_dropped_total = Counter(
    "extraction_variants_dropped_total",
    "Variants dropped by extraction caps",
    ["reason"],
)

# Change + notification metrics
changes_detected_total = Counter(
    "changes_detected_total",
    "Total number of change events detected",
    ["kind"],
)

notifications_created_total = Counter(
    "notifications_created_total",
    "Total number of notifications created",
    ["type"],
)

notifications_deduplicated_total = Counter(
    "notifications_deduplicated_total",
    "Notifications skipped because the same change was already notified",
    ["type"],
)

# Email delivery metrics
email_deliveries_total = Counter(
    "email_deliveries_total",
    "Email delivery attempts by outcome",
    ["outcome"],
)

# Lock metrics
lock_skips_total = Counter(
    "scheduler_lock_skips_total",
    "Cycles skipped because the lock was held",
    ["lock_name"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_check_run(trigger: str, status: str, duration: float | None = None):
    """Record a finished (or skipped) check cycle."""
    check_runs_total.labels(trigger=trigger, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type="check").set(time.time())
    if duration is not None:
        check_run_duration_seconds.observe(duration)


def record_product_check(outcome: str, extraction_duration: float | None = None):
    """Record a per-product check outcome (checked / failed)."""
    product_checks_total.labels(outcome=outcome).inc()
    if extraction_duration is not None:
        extraction_duration_seconds.observe(extraction_duration)


def record_variants_dropped(reason: str, count: int):
    """Record variants dropped by the extraction caps."""
    if count > 0:
        variants_dropped_total.labels(reason=reason).inc(count)


def record_change(kind: str):
    """Record a detected change event."""
    changes_detected_total.labels(kind=kind).inc()


def record_notification_created(notification_type: str):
    """Record a created notification."""
    notifications_created_total.labels(type=notification_type).inc()


def record_notification_deduplicated(notification_type: str):
    """Record a notification skipped as duplicate."""
    notifications_deduplicated_total.labels(type=notification_type).inc()


def record_email_delivery(outcome: str):
    """Record an email delivery outcome (sent / failed / exhausted / suppressed)."""
    email_deliveries_total.labels(outcome=outcome).inc()
    scheduler_last_run_timestamp.labels(job_type="email").set(time.time())


def record_lock_skip(lock_name: str):
    """Record a cycle skipped because its lock was held."""
    lock_skips_total.labels(lock_name=lock_name).inc()
