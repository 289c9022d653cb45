"""
Tests for the job registry.

Tests registry lifecycle, timer arming and reconciliation, dispatch with
overlap skipping, manual runs and shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest

from tenant_scheduler.core.config import settings
from tenant_scheduler.models.scheduling import (
    ExecutionOutcome,
    JobStatus,
    TriggerType,
)
from tenant_scheduler.services.scheduling.core.models import FireResult
from tenant_scheduler.services.scheduling.engine import RegistryStatus
from tenant_scheduler.services.scheduling.execution_manager import CANCELLED_MESSAGE


@asynccontextmanager
async def running(registry):
    await registry.start()
    try:
        yield registry
    finally:
        await registry.stop()


async def wait_for(predicate, timeout=5.0, interval=0.05):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class TestRegistryLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry):
        assert registry.status == RegistryStatus.STOPPED

        await registry.start()
        assert registry.is_running
        assert registry.started_at is not None

        await registry.stop()
        assert registry.status == RegistryStatus.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, registry):
        async with running(registry):
            with pytest.raises(RuntimeError, match="already running"):
                await registry.start()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, registry):
        await registry.stop()

        assert registry.status == RegistryStatus.STOPPED

    def test_arm_requires_running_registry(self, registry, make_job):
        with pytest.raises(RuntimeError):
            registry.arm(make_job())

    def test_fire_requires_running_registry(self, registry, make_job):
        with pytest.raises(RuntimeError):
            registry.fire(make_job().id)

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, registry, make_job):
        job = make_job()
        await registry.start()
        registry.arm(job)

        await registry.stop()

        assert not registry.is_armed(job.id)
        assert registry.armed_job_ids() == []

    @pytest.mark.asyncio
    async def test_stop_cancels_runs_past_grace_period(
        self, registry, repository, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 10})
        await registry.start()
        assert registry.fire(job.id) == FireResult.DISPATCHED
        await asyncio.sleep(0.05)

        with patch.object(settings, "SHUTDOWN_GRACE_SECONDS", 0.1):
            await registry.stop()

        assert len(target_state["cancelled"]) == 1
        assert not registry.is_in_flight(job.id)
        records = repository.list_executions("tenant-a", job_id=job.id)
        assert records[0].error_message == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_stop_waits_for_short_runs(self, registry, repository, make_job):
        job = make_job(target_function="sleep", params={"seconds": 0.2})
        await registry.start()
        registry.fire(job.id)

        await registry.stop()

        records = repository.list_executions("tenant-a", job_id=job.id)
        assert records[0].outcome == ExecutionOutcome.SUCCESS


class TestTimers:
    @pytest.mark.asyncio
    async def test_arm_enabled_job(self, registry, make_job):
        job = make_job()

        async with running(registry):
            assert registry.arm(job)
            assert registry.is_armed(job.id)

    @pytest.mark.asyncio
    async def test_arm_disabled_job_leaves_it_disarmed(self, registry, make_job):
        job = make_job(enabled=False)

        async with running(registry):
            assert not registry.arm(job)
            assert not registry.is_armed(job.id)

    @pytest.mark.asyncio
    async def test_rearming_replaces_timer(self, registry, make_job):
        job = make_job()

        async with running(registry):
            registry.arm(job)
            first = registry._timers[job.id]
            registry.arm(job)
            await asyncio.sleep(0)

            assert registry.armed_job_ids() == [job.id]
            assert registry._timers[job.id] is not first
            assert first.cancelled()

    @pytest.mark.asyncio
    async def test_disarm(self, registry, make_job):
        job = make_job()

        async with running(registry):
            registry.arm(job)

            assert registry.disarm(job.id)
            assert not registry.is_armed(job.id)
            assert not registry.disarm(job.id)

    @pytest.mark.asyncio
    async def test_reconcile_arms_schedulable_jobs(self, registry, make_job):
        job_a = make_job("a", tenant_id="tenant-a")
        job_b = make_job("b", tenant_id="tenant-b")
        disabled = make_job("c", tenant_id="tenant-a", enabled=False)

        async with running(registry):
            armed = registry.reconcile([job_a, job_b, disabled])

            assert armed == 2
            assert registry.armed_job_ids() == sorted([job_a.id, job_b.id])

    @pytest.mark.asyncio
    async def test_reconcile_with_tenant_scope(self, registry, make_job):
        job_a = make_job("a", tenant_id="tenant-a")
        job_b = make_job("b", tenant_id="tenant-b")

        async with running(registry):
            registry.reconcile([job_a, job_b])

            armed = registry.reconcile([], tenant_id="tenant-a")

            assert armed == 0
            assert not registry.is_armed(job_a.id)
            assert registry.is_armed(job_b.id)

    @pytest.mark.asyncio
    async def test_reconcile_without_scope_disarms_missing(self, registry, make_job):
        job_a = make_job("a", tenant_id="tenant-a")
        job_b = make_job("b", tenant_id="tenant-b")

        async with running(registry):
            registry.reconcile([job_a, job_b])
            registry.reconcile([job_b])

            assert registry.armed_job_ids() == [job_b.id]

    @pytest.mark.asyncio
    async def test_timer_fires_scheduled_execution(
        self, registry, repository, make_job
    ):
        job = make_job(cron_expression="* * * * * *")

        async with running(registry):
            registry.arm(job)

            fired = await wait_for(
                lambda: len(repository.list_executions("tenant-a")) >= 2, timeout=4
            )
            await registry.wait_idle(timeout=2)

        assert fired
        records = repository.list_executions("tenant-a")
        assert all(r.trigger_type == TriggerType.SCHEDULED for r in records)
        # Second-resolution schedules never fire twice for the same instant
        assert len({r.started_at.replace(microsecond=0) for r in records}) == len(
            records
        )

    @pytest.mark.asyncio
    async def test_timer_stops_when_job_deleted(self, registry, repository, make_job):
        job = make_job(cron_expression="* * * * * *")

        async with running(registry):
            registry.arm(job)
            repository.delete(job.id)

            stopped = await wait_for(lambda: not registry.is_armed(job.id), timeout=3)

        assert stopped
        assert repository.list_executions("tenant-a") == []


class TestDispatch:
    @pytest.mark.asyncio
    async def test_fire_dispatches_execution(self, registry, repository, make_job):
        job = make_job()

        async with running(registry):
            assert registry.fire(job.id) == FireResult.DISPATCHED
            assert await registry.wait_idle(timeout=2)

        records = repository.list_executions("tenant-a", job_id=job.id)
        assert len(records) == 1
        assert records[0].trigger_type == TriggerType.SCHEDULED

    @pytest.mark.asyncio
    async def test_fire_unknown_job(self, registry):
        async with running(registry):
            assert registry.fire("missing") == FireResult.NOT_FOUND

    @pytest.mark.asyncio
    async def test_fire_disabled_job_forgets_timer(self, registry, repository, make_job):
        job = make_job()

        async with running(registry):
            registry.arm(job)
            repository.set_enabled(job.id, False, "user-1", None, job.version)

            assert registry.fire(job.id) == FireResult.NOT_ENABLED
            assert not registry.is_armed(job.id)

    @pytest.mark.asyncio
    async def test_overlapping_fire_is_skipped(
        self, registry, repository, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 0.3})

        async with running(registry):
            assert registry.fire(job.id) == FireResult.DISPATCHED
            assert registry.is_in_flight(job.id)
            assert registry.fire(job.id) == FireResult.SKIPPED_OVERLAP
            await registry.wait_idle(timeout=2)

            assert registry.get_status()["skipped_overlaps"] == 1

        assert target_state["max_active"] == 1
        assert len(repository.list_executions("tenant-a")) == 1

    @pytest.mark.asyncio
    async def test_auto_disable_disarms_timer(self, registry, repository, make_job):
        job = make_job(target_function="fail", max_consecutive_failures=1)

        async with running(registry):
            registry.arm(job)
            registry.fire(job.id)
            await registry.wait_idle(timeout=2)

            assert not registry.is_armed(job.id)

        stored = repository.get(job.id)
        assert stored.status == JobStatus.ERROR
        assert not stored.enabled

    @pytest.mark.asyncio
    async def test_self_cancelling_target_counts_toward_auto_disable(
        self, registry, repository, make_job
    ):
        job = make_job(target_function="selfcancel", max_consecutive_failures=2)

        async with running(registry):
            for _ in range(2):
                assert registry.fire(job.id) == FireResult.DISPATCHED
                await registry.wait_idle(timeout=2)

            assert not registry.is_armed(job.id)

        stored = repository.get(job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.consecutive_failure_count == 2
        records = repository.list_executions("tenant-a", job_id=job.id)
        assert [r.outcome for r in records] == [ExecutionOutcome.FAILURE] * 2


class TestManualRuns:
    @pytest.mark.asyncio
    async def test_run_manual_returns_record(self, registry, make_job):
        job = make_job(target_function="echo")

        async with running(registry):
            record = await registry.run_manual(job, "user-9")

        assert record.trigger_type == TriggerType.MANUAL
        assert record.triggered_by == "user-9"
        assert record.outcome == ExecutionOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_run_manual_waits_for_in_flight_run(
        self, registry, repository, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 0.3})

        async with running(registry):
            registry.fire(job.id)
            record = await registry.run_manual(job)

        assert record.outcome == ExecutionOutcome.SUCCESS
        assert target_state["max_active"] == 1
        trigger_types = [
            r.trigger_type for r in repository.list_executions("tenant-a")
        ]
        assert sorted(t.value for t in trigger_types) == ["manual", "scheduled"]

    @pytest.mark.asyncio
    async def test_manual_run_blocks_timer_fire(self, registry, make_job):
        job = make_job(target_function="sleep", params={"seconds": 0.3})

        async with running(registry):
            manual = asyncio.create_task(registry.run_manual(job))
            await asyncio.sleep(0.05)

            assert registry.fire(job.id) == FireResult.SKIPPED_OVERLAP
            await manual

    @pytest.mark.asyncio
    async def test_run_manual_does_not_touch_timer(self, registry, make_job):
        job = make_job()

        async with running(registry):
            registry.arm(job)
            timer = registry._timers[job.id]

            await registry.run_manual(job)

            assert registry._timers[job.id] is timer

    @pytest.mark.asyncio
    async def test_cancelling_manual_caller_cancels_run(
        self, registry, make_job, target_state
    ):
        job = make_job(target_function="sleep", params={"seconds": 10})

        async with running(registry):
            manual = asyncio.create_task(registry.run_manual(job))
            await asyncio.sleep(0.1)
            manual.cancel()

            with pytest.raises(asyncio.CancelledError):
                await manual
            await registry.wait_idle(timeout=2)

        assert len(target_state["cancelled"]) == 1


class TestStatus:
    @pytest.mark.asyncio
    async def test_get_status(self, registry, make_job):
        job = make_job()

        async with running(registry):
            registry.arm(job)
            status = registry.get_status()

        assert status["status"] == "running"
        assert status["armed_jobs"] == [job.id]
        assert status["in_flight_jobs"] == []
        assert status["registry_id"] == registry.registry_id

    @pytest.mark.asyncio
    async def test_health_status(self, registry):
        stopped = registry.get_health_status()
        assert not stopped["overall_healthy"]

        async with running(registry):
            health = registry.get_health_status()

        assert health["overall_healthy"]
        assert health["repository"]["database_connection"]
        assert health["executions"]["is_healthy"]
