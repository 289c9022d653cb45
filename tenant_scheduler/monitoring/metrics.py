"""
Scheduler metrics collection.
"""

from prometheus_client import Counter, Gauge, Histogram

# === Execution Metrics ===

job_executions_total = Counter(
    "scheduled_job_executions_total",
    "Total number of scheduled job executions",
    ["trigger_type", "outcome"],
)

job_execution_duration_seconds = Histogram(
    "scheduled_job_execution_duration_seconds",
    "Wall-clock duration of scheduled job executions",
    buckets=[0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600],
)

job_auto_disabled_total = Counter(
    "scheduled_job_auto_disabled_total",
    "Jobs disabled after reaching their consecutive failure threshold",
)

execution_log_write_failures_total = Counter(
    "scheduled_job_log_write_failures_total",
    "Execution records that could not be persisted",
)

# === Timer Metrics ===

armed_timers = Gauge(
    "scheduled_job_armed_timers", "Number of live job timers in this process"
)

skipped_overlaps_total = Counter(
    "scheduled_job_skipped_overlaps_total",
    "Timer fires skipped because the previous run was still in flight",
)

scheduling_faults_total = Counter(
    "scheduled_job_scheduling_faults_total",
    "Timer fires for jobs that no longer exist or are no longer enabled",
)


def record_execution(trigger_type: str, outcome: str, duration_seconds: float) -> None:
    """Record one finished execution."""
    job_executions_total.labels(trigger_type=trigger_type, outcome=outcome).inc()
    job_execution_duration_seconds.observe(max(0.0, duration_seconds))
