"""
Execution logger.

Appends one immutable record per run. Writing the record is best effort: a
failed write is reported to logs, metrics and Sentry, and never changes the
outcome of the run it describes.
"""

from typing import List, Optional

import sentry_sdk

from tenant_scheduler.monitoring import metrics
from tenant_scheduler.utils.logger import get_logger

from .core.models import ExecutionRecord
from .repository import SchedulingRepository, SchedulingRepositoryError

logger = get_logger(__name__)


class ExecutionLogger:
    """Append-only sink for execution records"""

    def __init__(self, repository: Optional[SchedulingRepository] = None):
        self.repository = repository or SchedulingRepository()

    def append(self, record: ExecutionRecord) -> bool:
        """
        Persist ``record``.

        Returns:
            True if the record was stored, False if the write failed
        """
        try:
            self.repository.append_execution(record)
        except Exception as e:
            metrics.execution_log_write_failures_total.inc()
            sentry_sdk.capture_exception(e)
            logger.error(
                "Failed to write execution record",
                execution_id=record.id,
                job_id=record.job_id,
                tenant_id=record.tenant_id,
                outcome=record.outcome.value,
                error=str(e),
                exc_info=True,
            )
            return False

        logger.debug(
            "Wrote execution record",
            execution_id=record.id,
            job_id=record.job_id,
            outcome=record.outcome.value,
        )
        return True

    def history(
        self,
        tenant_id: str,
        job_id: Optional[str] = None,
        job_key: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        """Execution records for a tenant, newest first"""
        try:
            return self.repository.list_executions(
                tenant_id, job_id=job_id, job_key=job_key, limit=limit
            )
        except SchedulingRepositoryError:
            logger.error(
                "Failed to read execution history",
                tenant_id=tenant_id,
                job_id=job_id,
                exc_info=True,
            )
            raise
