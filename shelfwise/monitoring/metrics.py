"""
Prometheus metrics for lending engine monitoring.

Tracks:
- Borrow and return request transitions
- Idempotency cache hits
- Inventory integrity violations
- Fines created and restriction changes
- Payments applied
- Notification attempts
- Sink (audit/notification) failures
- Background sweep durations
"""
import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger(__name__)

# Request lifecycle metrics
borrow_requests_total = Counter(
    "borrow_requests_total",
    "Borrow request transitions",
    ["outcome"],  # created, approved, rejected, failed
)

return_requests_total = Counter(
    "return_requests_total",
    "Return request transitions",
    ["outcome"],  # created, approved, rejected, failed
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # cache, database
)

idempotency_cache_errors_total = Counter(
    "idempotency_cache_errors_total",
    "Idempotency cache operations that failed open",
    ["operation"],
)

# Inventory metrics
inventory_mutations_total = Counter(
    "inventory_mutations_total",
    "Inventory ledger mutations",
    ["operation", "status"],  # reserve/release, ok/not_available
)

inventory_violations_total = Counter(
    "inventory_violations_total",
    "Inventory integrity violations detected",
    ["kind"],  # negative, over_release
)

# Fine metrics
fines_created_total = Counter(
    "fines_created_total",
    "Fines created",
    ["fine_type"],
)

fine_amount_dollars = Histogram(
    "fine_amount_dollars",
    "Fine amounts in dollars",
    buckets=(10, 11, 12, 13, 25, 50, 75, 100, 250),
)

restriction_changes_total = Counter(
    "restriction_changes_total",
    "Users restricted or unrestricted",
    ["change"],  # restricted, unrestricted
)

# Payment metrics
payments_applied_total = Counter(
    "payments_applied_total",
    "Payments reconciled against fines",
    ["status"],  # applied, duplicate, ignored
)

payment_amount_dollars = Histogram(
    "payment_amount_dollars",
    "Applied payment amounts in dollars",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500),
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Notification dispatch attempts",
    ["kind", "status"],  # sent, failed, skipped
)

dependency_failures_total = Counter(
    "dependency_failures_total",
    "Non-fatal failures of external sinks",
    ["sink"],  # audit, notification, kv_store
)

# Job metrics
job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Background job duration in seconds",
    ["job"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

job_last_run_timestamp = Gauge(
    "job_last_run_timestamp",
    "Timestamp of the last completed run of a background job",
    ["job"],
)


class MetricsCollector:
    """Helper class for collecting metrics. Recording never raises."""

    @staticmethod
    def _safe(fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning("metrics_record_failed", error=str(e))

    @staticmethod
    def record_borrow_request(outcome: str) -> None:
        """Record a borrow request transition."""
        MetricsCollector._safe(lambda: borrow_requests_total.labels(outcome=outcome).inc())

    @staticmethod
    def record_return_request(outcome: str) -> None:
        """Record a return request transition."""
        MetricsCollector._safe(lambda: return_requests_total.labels(outcome=outcome).inc())

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        MetricsCollector._safe(lambda: idempotency_cache_hits_total.labels(source=source).inc())

    @staticmethod
    def record_idempotency_cache_error(operation: str) -> None:
        MetricsCollector._safe(
            lambda: idempotency_cache_errors_total.labels(operation=operation).inc()
        )

    @staticmethod
    def record_inventory_mutation(operation: str, status: str) -> None:
        MetricsCollector._safe(
            lambda: inventory_mutations_total.labels(operation=operation, status=status).inc()
        )

    @staticmethod
    def record_inventory_violation(kind: str) -> None:
        """Record an inventory integrity violation."""
        MetricsCollector._safe(lambda: inventory_violations_total.labels(kind=kind).inc())

    @staticmethod
    def record_fine_created(fine_type: str, amount: float) -> None:
        """Record a new fine."""
        def _record() -> None:
            fines_created_total.labels(fine_type=fine_type).inc()
            fine_amount_dollars.observe(amount)

        MetricsCollector._safe(_record)

    @staticmethod
    def record_restriction_change(change: str, count: int = 1) -> None:
        if count:
            MetricsCollector._safe(
                lambda: restriction_changes_total.labels(change=change).inc(count)
            )

    @staticmethod
    def record_payment(status: str, amount: float = 0.0) -> None:
        """Record a reconciled payment."""
        def _record() -> None:
            payments_applied_total.labels(status=status).inc()
            if amount:
                payment_amount_dollars.observe(amount)

        MetricsCollector._safe(_record)

    @staticmethod
    def record_notification(kind: str, status: str) -> None:
        """Record a notification attempt."""
        MetricsCollector._safe(
            lambda: notifications_total.labels(kind=kind, status=status).inc()
        )

    @staticmethod
    def record_dependency_failure(sink: str) -> None:
        MetricsCollector._safe(lambda: dependency_failures_total.labels(sink=sink).inc())

    @staticmethod
    def record_job_run(job: str, duration_seconds: float) -> None:
        """Record a completed background job run."""
        def _record() -> None:
            job_duration_seconds.labels(job=job).observe(duration_seconds)
            job_last_run_timestamp.labels(job=job).set_to_current_time()

        MetricsCollector._safe(_record)


# Export singleton instance
metrics = MetricsCollector()
