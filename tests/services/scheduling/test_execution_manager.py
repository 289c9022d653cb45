"""
Tests for the execution engine.

Covers outcome classification, true cancellation on timeout, run-state
transitions, caller cancellation and best-effort logging.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from tenant_scheduler.models.scheduling import (
    ExecutionOutcome,
    JobStatus,
    TriggerType,
)
from tenant_scheduler.services.scheduling.core.models import ExecutionContext
from tenant_scheduler.services.scheduling.execution_manager import CANCELLED_MESSAGE
from tenant_scheduler.services.scheduling.repository import (
    LogWriteFailure,
    StaleJobError,
)


class TestExecutionOutcomes:
    @pytest.mark.asyncio
    async def test_successful_execution(
        self, execution_engine, repository, planner, make_job
    ):
        job = make_job(target_function="echo", params={"batch": 10})

        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.SUCCESS
        assert record.trigger_type == TriggerType.SCHEDULED
        assert record.output == {"batch": 10}
        assert record.input == {"batch": 10}
        assert record.error_message is None
        assert record.ended_at >= record.started_at

        stored = repository.get(job.id)
        assert stored.consecutive_failure_count == 0
        assert stored.status == JobStatus.ACTIVE
        assert stored.last_result == {"batch": 10}
        assert stored.last_run_at is not None
        assert stored.next_run_at == planner.next_fire_time(
            job.cron_expression, job.timezone, record.started_at
        )

        history = repository.list_executions("tenant-a", job_id=job.id)
        assert [r.id for r in history] == [record.id]

    @pytest.mark.asyncio
    async def test_execution_metadata_merged_into_params(
        self, execution_engine, make_job, target_state
    ):
        job = make_job(app_installation_id="app-9")

        record = await execution_engine.execute(job, TriggerType.MANUAL, "user-7")

        params, context = target_state["calls"][0]
        assert params["batch"] == 10
        assert params["_execution"] == {
            "execution_id": record.id,
            "tenant_id": "tenant-a",
            "job_id": job.id,
            "job_key": "nightly",
            "app_installation_id": "app-9",
            "trigger_type": "manual",
            "triggered_by": "user-7",
        }
        assert isinstance(context, ExecutionContext)
        assert context.execution_id == record.id

    @pytest.mark.asyncio
    async def test_failed_execution_counts_failure(
        self, execution_engine, repository, make_job
    ):
        job = make_job(target_function="fail")

        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.FAILURE
        assert record.error_message == "boom"
        assert record.output is None

        stored = repository.get(job.id)
        assert stored.consecutive_failure_count == 1
        assert stored.status == JobStatus.ACTIVE
        assert stored.enabled
        assert stored.last_error == "boom"
        assert stored.next_run_at is not None

    @pytest.mark.asyncio
    async def test_timeout_cancels_target(
        self, execution_engine, repository, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 10}, timeout_seconds=1)

        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.TIMEOUT
        assert "timed out after 1 seconds" in record.error_message
        assert 900 <= record.duration_ms < 5000
        assert target_state["cancelled"] == [record.id]
        assert target_state["active"] == 0

        stored = repository.get(job.id)
        assert stored.consecutive_failure_count == 1
        assert stored.status == JobStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_target_cancelling_itself_is_a_failure(
        self, execution_engine, repository, make_job
    ):
        job = make_job(target_function="selfcancel")

        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.FAILURE
        assert record.error_message == "Target function was cancelled"

        stored = repository.get(job.id)
        assert stored.consecutive_failure_count == 1
        assert stored.last_error == "Target function was cancelled"
        assert stored.last_run_at is not None

    @pytest.mark.asyncio
    async def test_unknown_target_is_a_failure(
        self, execution_engine, targets, repository, make_job
    ):
        job = make_job(target_function="echo")
        targets.unregister("echo")

        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.FAILURE
        assert "not registered" in record.error_message

    @pytest.mark.asyncio
    async def test_success_after_failures_resets_count(
        self, execution_engine, repository, make_job, target_state
    ):
        job = make_job(target_function="flaky", max_consecutive_failures=5)
        target_state["fail"] = True
        await execution_engine.execute(job, TriggerType.SCHEDULED)
        await execution_engine.execute(job, TriggerType.SCHEDULED)
        assert repository.get(job.id).consecutive_failure_count == 2

        target_state["fail"] = False
        record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.SUCCESS
        stored = repository.get(job.id)
        assert stored.consecutive_failure_count == 0
        assert stored.last_error is None
        assert stored.last_result == "recovered"


class TestAutoDisable:
    @pytest.mark.asyncio
    async def test_threshold_disables_job_and_notifies(
        self, execution_engine, repository, make_job
    ):
        job = make_job(target_function="fail", max_consecutive_failures=2)
        notified = []

        async def on_auto_disable(context, update):
            notified.append((context.job_id, update.consecutive_failure_count))

        execution_engine.add_execution_callback("on_auto_disable", on_auto_disable)

        await execution_engine.execute(job, TriggerType.SCHEDULED)
        assert notified == []

        await execution_engine.execute(job, TriggerType.SCHEDULED)

        stored = repository.get(job.id)
        assert stored.status == JobStatus.ERROR
        assert not stored.enabled
        assert stored.next_run_at is None
        assert stored.consecutive_failure_count == 2
        assert notified == [(job.id, 2)]


class TestConcurrentChanges:
    @pytest.mark.asyncio
    async def test_cancelled_by_caller(
        self, execution_engine, repository, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 10})
        task = asyncio.create_task(execution_engine.execute(job, TriggerType.MANUAL))
        await asyncio.sleep(0.1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(target_state["cancelled"]) == 1
        records = repository.list_executions("tenant-a", job_id=job.id)
        assert len(records) == 1
        assert records[0].outcome == ExecutionOutcome.FAILURE
        assert records[0].error_message == CANCELLED_MESSAGE
        assert records[0].trigger_type == TriggerType.MANUAL

        stored = repository.get(job.id)
        assert stored.version == job.version
        assert stored.consecutive_failure_count == 0
        assert stored.last_run_at is None

    @pytest.mark.asyncio
    async def test_job_deleted_mid_run(self, execution_engine, repository, make_job):
        job = make_job(target_function="sleep", params={"seconds": 0.2})
        task = asyncio.create_task(execution_engine.execute(job, TriggerType.SCHEDULED))
        await asyncio.sleep(0.05)

        repository.delete(job.id)
        record = await task

        assert record.outcome == ExecutionOutcome.SUCCESS
        assert repository.get(job.id) is None
        assert len(repository.list_executions("tenant-a", job_id=job.id)) == 1

    @pytest.mark.asyncio
    async def test_job_disabled_mid_run_is_not_reenabled(
        self, execution_engine, repository, make_job
    ):
        job = make_job(target_function="sleep", params={"seconds": 0.2})
        task = asyncio.create_task(execution_engine.execute(job, TriggerType.SCHEDULED))
        await asyncio.sleep(0.05)

        async with execution_engine.job_lock(job.id):
            repository.set_enabled(job.id, False, "user-1", None, job.version)
        await task

        stored = repository.get(job.id)
        assert not stored.enabled
        assert stored.status == JobStatus.PAUSED
        assert stored.next_run_at is None
        assert stored.last_run_at is not None

    @pytest.mark.asyncio
    async def test_stale_write_is_retried(self, execution_engine, repository, make_job):
        job = make_job()
        original = repository.update_run_state
        calls = []

        def conflict_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise StaleJobError("conflict")
            return original(*args, **kwargs)

        with patch.object(repository, "update_run_state", side_effect=conflict_once):
            await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert len(calls) == 2
        assert repository.get(job.id).last_run_at is not None

    @pytest.mark.asyncio
    async def test_store_failure_does_not_escape(
        self, execution_engine, repository, make_job
    ):
        job = make_job()

        with patch.object(
            repository, "update_run_state", side_effect=RuntimeError("db down")
        ):
            record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.SUCCESS


class TestBestEffortLogging:
    @pytest.mark.asyncio
    async def test_log_write_failure_keeps_outcome(
        self, execution_engine, repository, make_job
    ):
        job = make_job(target_function="fail")

        with patch.object(
            repository, "append_execution", side_effect=LogWriteFailure("disk full")
        ), patch(
            "tenant_scheduler.services.scheduling.execution_logger.sentry_sdk"
        ) as sentry:
            record = await execution_engine.execute(job, TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.FAILURE
        assert repository.get(job.id).consecutive_failure_count == 1
        assert repository.list_executions("tenant-a") == []
        sentry.capture_exception.assert_called_once()


class TestCallbacksAndHealth:
    @pytest.mark.asyncio
    async def test_callbacks_receive_events(self, execution_engine, make_job):
        events = []
        execution_engine.add_execution_callback(
            "on_start", lambda ctx: events.append("start")
        )
        execution_engine.add_execution_callback(
            "on_success", lambda ctx, result: events.append("success")
        )
        execution_engine.add_execution_callback(
            "on_complete", lambda ctx, outcome, record: events.append(outcome.value)
        )

        await execution_engine.execute(make_job(), TriggerType.SCHEDULED)

        assert events == ["start", "success", "success"]

    @pytest.mark.asyncio
    async def test_callback_errors_are_swallowed(self, execution_engine, make_job):
        execution_engine.add_execution_callback(
            "on_start", Mock(side_effect=RuntimeError("bad callback"))
        )

        record = await execution_engine.execute(make_job(), TriggerType.SCHEDULED)

        assert record.outcome == ExecutionOutcome.SUCCESS

    def test_unknown_callback_event_ignored(self, execution_engine):
        execution_engine.add_execution_callback("on_nothing", Mock())

        assert "on_nothing" not in execution_engine._execution_callbacks

    @pytest.mark.asyncio
    async def test_active_executions_tracked(self, execution_engine, make_job):
        job = make_job(target_function="sleep", params={"seconds": 0.2})
        task = asyncio.create_task(execution_engine.execute(job, TriggerType.SCHEDULED))
        await asyncio.sleep(0.05)

        active = execution_engine.get_active_executions()
        assert [ctx.job_id for ctx in active] == [job.id]
        assert execution_engine.get_execution_context(active[0].execution_id) is active[0]

        await task
        assert execution_engine.get_active_executions() == []

    def test_health_reports_stuck_executions(self, execution_engine):
        stuck = ExecutionContext(
            execution_id="exec-old",
            job_id="job-1",
            job_key="nightly",
            tenant_id="tenant-a",
            trigger_type=TriggerType.SCHEDULED,
            started_at=datetime.now(timezone.utc) - timedelta(hours=2),
            timeout_seconds=5,
        )
        execution_engine._active_executions[stuck.execution_id] = stuck

        health = execution_engine.get_health_status()

        assert not health["is_healthy"]
        assert health["stuck_executions"] == 1
        assert health["stuck_execution_details"][0]["execution_id"] == "exec-old"
