from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from tenant_scheduler.models.scheduling import ExecutionOutcome, TriggerType
from tenant_scheduler.services.scheduling.core.models import ExecutionRecord
from tenant_scheduler.services.scheduling.execution_logger import ExecutionLogger
from tenant_scheduler.services.scheduling.repository import (
    LogWriteFailure,
    SchedulingRepository,
    SchedulingRepositoryError,
)


def _record(execution_id="exec-1", job_id="job-1", tenant_id="tenant-a"):
    started = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    return ExecutionRecord(
        id=execution_id,
        job_id=job_id,
        tenant_id=tenant_id,
        job_key="nightly",
        target_function="noop",
        trigger_type=TriggerType.SCHEDULED,
        started_at=started,
        ended_at=started + timedelta(seconds=2),
        duration_ms=2000,
        outcome=ExecutionOutcome.SUCCESS,
        input={"batch": 10},
        output={"ok": True},
    )


class TestExecutionLogger:
    def test_append_persists_record(self, repository):
        logger = ExecutionLogger(repository)

        assert logger.append(_record())

        history = logger.history("tenant-a")
        assert len(history) == 1
        assert history[0].id == "exec-1"
        assert history[0].output == {"ok": True}

    def test_append_failure_is_reported_not_raised(self):
        repository = Mock(spec=SchedulingRepository)
        repository.append_execution.side_effect = LogWriteFailure("disk full")
        logger = ExecutionLogger(repository)

        with patch(
            "tenant_scheduler.services.scheduling.execution_logger.sentry_sdk"
        ) as sentry, patch(
            "tenant_scheduler.services.scheduling.execution_logger.metrics"
        ) as metrics:
            assert logger.append(_record()) is False

        sentry.capture_exception.assert_called_once()
        assert isinstance(sentry.capture_exception.call_args.args[0], LogWriteFailure)
        metrics.execution_log_write_failures_total.inc.assert_called_once()

    def test_history_is_tenant_scoped(self, repository):
        logger = ExecutionLogger(repository)
        logger.append(_record("exec-a", tenant_id="tenant-a"))
        logger.append(_record("exec-b", job_id="job-2", tenant_id="tenant-b"))

        assert [r.id for r in logger.history("tenant-b")] == ["exec-b"]
        assert logger.history("tenant-a", job_id="job-2") == []

    def test_history_read_errors_propagate(self):
        repository = Mock(spec=SchedulingRepository)
        repository.list_executions.side_effect = SchedulingRepositoryError("down")
        logger = ExecutionLogger(repository)

        with pytest.raises(SchedulingRepositoryError):
            logger.history("tenant-a")
