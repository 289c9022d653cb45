"""
In-memory job registry.

Owns one timer task per enabled job and dispatches executions when a timer
fires. At most one execution per job is in flight: a fire that finds the
previous run still going is skipped and counted, never run concurrently.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterable, List, Optional

from tenant_scheduler.core.config import settings
from tenant_scheduler.models.scheduling import TriggerType
from tenant_scheduler.monitoring import metrics
from tenant_scheduler.utils.logger import add_job_context, get_logger

from .core.errors import SchedulingFault
from .core.models import ExecutionContext, ExecutionRecord, FireResult, JobSnapshot
from .execution_manager import ExecutionEngine
from .repository import SchedulingRepository
from .triggers import CronPlanner, TriggerError

logger = get_logger(__name__)

# Pause before a timer retries after an unexpected error (store outage etc.)
TIMER_ERROR_BACKOFF_SECONDS = 5.0


class RegistryStatus(str, Enum):
    """Registry operational status"""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """
    Scheduling authority for one process.

    Holds the live timers keyed by job id and the map of in-flight executions,
    which doubles as each job's running flag. Registries are plain objects:
    several may coexist in one process, each with its own store and engine.
    """

    def __init__(
        self,
        repository: Optional[SchedulingRepository] = None,
        execution_engine: Optional[ExecutionEngine] = None,
        planner: Optional[CronPlanner] = None,
    ):
        """Initialize job registry"""
        self.repository = repository or SchedulingRepository()
        self.planner = planner or CronPlanner()
        self.execution_engine = execution_engine or ExecutionEngine(
            self.repository, planner=self.planner
        )

        self.status = RegistryStatus.STOPPED
        self.registry_id = str(uuid.uuid4())
        self.started_at: Optional[datetime] = None

        self._timers: Dict[str, asyncio.Task] = {}
        self._timer_tenants: Dict[str, str] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._skipped_overlaps = 0

        self.execution_engine.add_execution_callback(
            "on_auto_disable", self._on_auto_disable
        )

    @property
    def is_running(self) -> bool:
        return self.status == RegistryStatus.RUNNING

    async def start(self) -> None:
        """Start accepting timers"""
        if self.status != RegistryStatus.STOPPED:
            raise RuntimeError(f"Registry already running (status: {self.status})")

        self.status = RegistryStatus.RUNNING
        self.started_at = _utcnow()
        logger.info("Job registry started", registry_id=self.registry_id)

    async def stop(self) -> None:
        """
        Cancel every timer, then give in-flight runs up to
        ``SHUTDOWN_GRACE_SECONDS`` to finish before cancelling them.
        """
        if self.status == RegistryStatus.STOPPED:
            return

        logger.info("Stopping job registry", registry_id=self.registry_id)
        self.status = RegistryStatus.STOPPING

        timers = [self._timers[job_id] for job_id in list(self._timers)]
        for job_id in list(self._timers):
            self._cancel_timer(job_id)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        in_flight = list(self._running.values())
        if in_flight:
            _, pending = await asyncio.wait(
                in_flight, timeout=settings.SHUTDOWN_GRACE_SECONDS
            )
            if pending:
                logger.warning(
                    "Cancelling executions still running at shutdown",
                    count=len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self.status = RegistryStatus.STOPPED
        logger.info("Job registry stopped", registry_id=self.registry_id)

    # Timer management

    def arm(self, job: JobSnapshot) -> bool:
        """
        (Re)arm the timer for ``job``.

        Cancels any existing timer for the job first, so repeated calls converge
        on a single timer. A job that is disabled or in error is left disarmed.

        Returns:
            True if a timer is now armed

        Raises:
            RuntimeError: If the registry is not running
            TriggerError: If the job's schedule cannot produce a fire time
        """
        if not self.is_running:
            raise RuntimeError("Cannot arm timers while the registry is not running")

        self._cancel_timer(job.id)
        if not job.is_schedulable:
            logger.debug(
                "Job is not schedulable, leaving it disarmed",
                enabled=job.enabled,
                status=job.status.value,
                **add_job_context(job.id, job.tenant_id, job.job_key),
            )
            return False

        fire_at = self.planner.next_fire_time(
            job.cron_expression, job.timezone, _utcnow()
        )
        task = asyncio.create_task(
            self._timer_loop(job.id, fire_at), name=f"job-timer-{job.id}"
        )
        self._timers[job.id] = task
        self._timer_tenants[job.id] = job.tenant_id
        metrics.armed_timers.inc()
        task.add_done_callback(partial(self._on_timer_done, job.id))

        logger.info(
            "Armed job timer",
            next_fire_at=fire_at.isoformat(),
            **add_job_context(job.id, job.tenant_id, job.job_key),
        )
        return True

    def disarm(self, job_id: str) -> bool:
        """Cancel the job's timer. No-op if none is armed."""
        disarmed = self._cancel_timer(job_id)
        if disarmed:
            logger.info("Disarmed job timer", job_id=job_id)
        return disarmed

    def reconcile(
        self, jobs: Iterable[JobSnapshot], tenant_id: Optional[str] = None
    ) -> int:
        """
        Make the live timers match ``jobs``.

        Arms every job that is enabled and not in error, and disarms any timer
        not in that set. With ``tenant_id`` only that tenant's timers are
        considered; other tenants are left alone.

        Returns:
            Number of timers armed
        """
        wanted = {
            job.id: job
            for job in jobs
            if job.is_schedulable and (tenant_id is None or job.tenant_id == tenant_id)
        }

        for job_id in list(self._timers):
            if tenant_id is not None and self._timer_tenants.get(job_id) != tenant_id:
                continue
            if job_id not in wanted:
                self.disarm(job_id)

        armed = 0
        for job in wanted.values():
            try:
                if self.arm(job):
                    armed += 1
            except TriggerError as e:
                logger.error(
                    "Could not arm job during reconcile",
                    error=str(e),
                    **add_job_context(job.id, job.tenant_id, job.job_key),
                )

        logger.info(
            "Reconciled job timers",
            tenant_id=tenant_id,
            armed=armed,
            total_armed=len(self._timers),
        )
        return armed

    def _cancel_timer(self, job_id: str) -> bool:
        task = self._timers.pop(job_id, None)
        self._timer_tenants.pop(job_id, None)
        if task is None:
            return False
        metrics.armed_timers.dec()
        if not task.done():
            task.cancel()
        return True

    def _on_timer_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._timers.get(job_id) is task:
            self._timers.pop(job_id, None)
            self._timer_tenants.pop(job_id, None)
            metrics.armed_timers.dec()
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Job timer crashed",
                job_id=job_id,
                error=str(task.exception()),
            )

    def _forget(self, job_id: str) -> None:
        # A timer that faults stops itself; only cancel timers from elsewhere
        timer = self._timers.get(job_id)
        if timer is not None and timer is not asyncio.current_task():
            self._cancel_timer(job_id)

    def _log_fault(self, job_id: str, reason: str) -> None:
        fault = SchedulingFault(f"Timer fired for job {job_id}: {reason}")
        metrics.scheduling_faults_total.inc()
        logger.debug("Scheduling fault", job_id=job_id, reason=str(fault))

    async def _timer_loop(self, job_id: str, fire_at: Optional[datetime]) -> None:
        """Sleep until the next fire time, dispatch, repeat"""
        last_fire: Optional[datetime] = None
        while True:
            try:
                if fire_at is None:
                    job = self.repository.get(job_id)
                    if job is None:
                        self._log_fault(job_id, "job no longer exists")
                        return
                    if not job.is_schedulable:
                        self._log_fault(job_id, "job is no longer enabled")
                        return
                    after = _utcnow()
                    if last_fire is not None and last_fire > after:
                        after = last_fire
                    fire_at = self.planner.next_fire_time(
                        job.cron_expression, job.timezone, after
                    )

                delay = (fire_at - _utcnow()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)

                last_fire, fire_at = fire_at, None
                if self.fire(job_id) in (FireResult.NOT_FOUND, FireResult.NOT_ENABLED):
                    return

            except asyncio.CancelledError:
                raise
            except TriggerError as e:
                logger.error(
                    "Job schedule produced no fire time, timer stopped",
                    job_id=job_id,
                    error=str(e),
                )
                return
            except Exception as e:
                logger.error(
                    f"Error in job timer: {e}", job_id=job_id, exc_info=True
                )
                fire_at = None
                await asyncio.sleep(TIMER_ERROR_BACKOFF_SECONDS)

    # Dispatch

    def fire(self, job_id: str) -> FireResult:
        """
        Dispatch a scheduled execution of ``job_id`` without awaiting it.

        Re-reads the job first. A job that is gone or no longer enabled is a
        scheduling fault: logged at debug and its timer forgotten.
        """
        if not self.is_running:
            raise RuntimeError("Cannot fire timers while the registry is not running")

        job = self.repository.get(job_id)
        if job is None:
            self._log_fault(job_id, "job no longer exists")
            self._forget(job_id)
            return FireResult.NOT_FOUND
        if not job.is_schedulable:
            self._log_fault(job_id, "job is no longer enabled")
            self._forget(job_id)
            return FireResult.NOT_ENABLED

        if job_id in self._running:
            self._skipped_overlaps += 1
            metrics.skipped_overlaps_total.inc()
            logger.warning(
                "Skipped fire, previous execution still running",
                **add_job_context(job.id, job.tenant_id, job.job_key),
            )
            return FireResult.SKIPPED_OVERLAP

        task = asyncio.create_task(
            self.execution_engine.execute(job, TriggerType.SCHEDULED),
            name=f"job-run-{job_id}",
        )
        self._track_run(job_id, task)
        return FireResult.DISPATCHED

    async def run_manual(
        self, job: JobSnapshot, triggered_by: Optional[str] = None
    ) -> ExecutionRecord:
        """
        Execute ``job`` now with trigger type ``manual``.

        Waits for an in-flight run of the same job to finish first, and holds
        the job's running flag while it executes, so a timer fire during a
        manual run is skipped. The armed timer itself is left untouched.
        Cancelling the caller cancels the execution.
        """
        while True:
            previous = self._running.get(job.id)
            if previous is None:
                break
            logger.info(
                "Manual run waiting for in-flight execution",
                job_id=job.id,
            )
            await asyncio.wait({previous})

        task = asyncio.create_task(
            self.execution_engine.execute(job, TriggerType.MANUAL, triggered_by),
            name=f"job-manual-run-{job.id}",
        )
        self._track_run(job.id, task)
        return await task

    def _track_run(self, job_id: str, task: asyncio.Task) -> None:
        self._running[job_id] = task
        task.add_done_callback(partial(self._on_run_done, job_id))

    def _on_run_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._running.get(job_id) is task:
            del self._running[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Execution task crashed",
                job_id=job_id,
                error=str(task.exception()),
            )

    async def _on_auto_disable(self, context: ExecutionContext, **kwargs: Any) -> None:
        self.disarm(context.job_id)

    # Status

    def is_armed(self, job_id: str) -> bool:
        return job_id in self._timers

    def is_in_flight(self, job_id: str) -> bool:
        return job_id in self._running

    def armed_job_ids(self) -> List[str]:
        return sorted(self._timers)

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no execution is in flight. Returns False on timeout."""
        in_flight = list(self._running.values())
        if not in_flight:
            return True
        _, pending = await asyncio.wait(in_flight, timeout=timeout)
        return not pending

    def get_status(self) -> Dict[str, Any]:
        """Get registry status"""
        return {
            "registry_id": self.registry_id,
            "status": self.status.value,
            "running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "armed_jobs": sorted(self._timers),
            "in_flight_jobs": sorted(self._running),
            "skipped_overlaps": self._skipped_overlaps,
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Get comprehensive health status"""
        execution_health = self.execution_engine.get_health_status()
        repository_health = self.repository.health_check()

        return {
            "overall_healthy": (
                self.is_running
                and execution_health["is_healthy"]
                and repository_health["store_healthy"]
            ),
            "registry": self.get_status(),
            "executions": execution_health,
            "repository": repository_health,
            "checked_at": _utcnow().isoformat(),
        }
