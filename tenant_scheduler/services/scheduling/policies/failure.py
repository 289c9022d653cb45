"""
Failure-threshold policy.

Turns the outcome of one execution into the job's next run state: a success
clears the failure streak, a failure or timeout extends it, and a streak that
reaches ``max_consecutive_failures`` moves the job to ``error`` and disables it.
"""

import json
from datetime import datetime
from typing import Any, Optional

from tenant_scheduler.models.scheduling import ExecutionOutcome, JobStatus
from tenant_scheduler.utils.logger import get_logger

from ..core.models import JobSnapshot, RunStateUpdate
from ..triggers import CronPlanner, TriggerError

logger = get_logger(__name__)


def storable_result(value: Any) -> Any:
    """Return ``value`` if it can be stored as JSON, else its ``repr``."""
    if value is None:
        return None
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


class FailurePolicy:
    """Computes run-state transitions after an execution"""

    def __init__(self, planner: Optional[CronPlanner] = None):
        self.planner = planner or CronPlanner()

    def next_run_after(self, job: JobSnapshot, after: datetime) -> Optional[datetime]:
        """Next fire time for a schedulable job, None otherwise"""
        if not job.is_schedulable:
            return None
        try:
            return self.planner.next_fire_time(
                job.cron_expression, job.timezone, after
            )
        except TriggerError as e:
            logger.warning(
                "Could not compute next run time",
                job_id=job.id,
                cron_expression=job.cron_expression,
                error=str(e),
            )
            return None

    def compute(
        self,
        job: JobSnapshot,
        outcome: ExecutionOutcome,
        started_at: datetime,
        result: Any = None,
        error_message: Optional[str] = None,
    ) -> RunStateUpdate:
        """
        Compute the run state that follows ``outcome``.

        ``job`` must be the freshly read row, not the snapshot taken at
        dispatch, so that a concurrent disable is respected: a disabled job is
        never re-enabled here and keeps a null ``next_run_at``.

        ``next_run_at`` is the first fire time after ``started_at``, the same
        instant the job's timer plans its next fire from.
        """
        if outcome == ExecutionOutcome.SUCCESS:
            status = JobStatus.ACTIVE if job.enabled else job.status
            return RunStateUpdate(
                status=status,
                enabled=job.enabled,
                consecutive_failure_count=0,
                last_run_at=started_at,
                next_run_at=self.next_run_after(job, started_at),
                last_error=None,
                last_result=storable_result(result),
            )

        failure_count = job.consecutive_failure_count + 1

        if failure_count >= job.max_consecutive_failures and job.status != JobStatus.ERROR:
            return RunStateUpdate(
                status=JobStatus.ERROR,
                enabled=False,
                consecutive_failure_count=failure_count,
                last_run_at=started_at,
                next_run_at=None,
                last_error=error_message,
                last_result=job.last_result,
                auto_disabled=True,
            )

        return RunStateUpdate(
            status=job.status,
            enabled=job.enabled,
            consecutive_failure_count=failure_count,
            last_run_at=started_at,
            next_run_at=self.next_run_after(job, started_at),
            last_error=error_message,
            last_result=job.last_result,
        )
