"""
Job execution lifecycle management.

Runs one execution of a job to completion or timeout, writes the resulting
run-state transition back to the job store and appends the execution record.
Errors raised by target functions are classified here and never escape
``ExecutionEngine.execute``.
"""

import asyncio
import inspect
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

from tenant_scheduler.core.config import settings
from tenant_scheduler.models.scheduling import ExecutionOutcome, TriggerType
from tenant_scheduler.monitoring import metrics
from tenant_scheduler.utils.logger import add_job_context, get_logger

from .core.errors import ExecutionFailure, ExecutionTimeoutError
from .core.models import (
    EXECUTION_PARAM_KEY,
    ExecutionContext,
    ExecutionRecord,
    JobSnapshot,
    RunStateUpdate,
)
from .execution_logger import ExecutionLogger
from .policies import FailurePolicy, KeyedLock, storable_result
from .repository import JobNotFoundError, SchedulingRepository, StaleJobError
from .targets import TargetFunctionRegistry
from .triggers import CronPlanner

logger = get_logger(__name__)

# How long a cancelled target gets to unwind before we stop waiting on it
CANCEL_GRACE_SECONDS = 5.0

CANCELLED_MESSAGE = "Execution cancelled"


class ExecutionEngine:
    """
    Executes jobs and tracks in-flight executions.

    Every write to a job's run state goes through ``_apply_run_state`` under the
    job's entry in ``job_locks``, the same lock the control surface takes for
    enable, disable and delete.
    """

    def __init__(
        self,
        repository: Optional[SchedulingRepository] = None,
        targets: Optional[TargetFunctionRegistry] = None,
        execution_logger: Optional[ExecutionLogger] = None,
        planner: Optional[CronPlanner] = None,
        job_locks: Optional[KeyedLock] = None,
    ):
        """Initialize execution engine"""
        self.repository = repository or SchedulingRepository()
        self.targets = targets or TargetFunctionRegistry()
        self.execution_logger = execution_logger or ExecutionLogger(self.repository)
        self.planner = planner or CronPlanner()
        self.failure_policy = FailurePolicy(self.planner)
        self.job_locks = job_locks or KeyedLock()

        self._active_executions: Dict[str, ExecutionContext] = {}
        self._execution_callbacks: Dict[str, List[Callable]] = {
            "on_start": [],
            "on_success": [],
            "on_failure": [],
            "on_timeout": [],
            "on_auto_disable": [],
            "on_complete": [],
        }

    def add_execution_callback(self, event: str, callback: Callable) -> None:
        """Add callback for execution events"""
        if event in self._execution_callbacks:
            self._execution_callbacks[event].append(callback)
        else:
            logger.warning(f"Unknown execution event: {event}")

    async def _notify_callbacks(
        self, event: str, context: ExecutionContext, **kwargs
    ) -> None:
        """Notify all callbacks for an event"""
        for callback in self._execution_callbacks.get(event, []):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(context, **kwargs)
                else:
                    callback(context, **kwargs)
            except Exception as e:
                logger.error(
                    "Execution callback failed",
                    event=event,
                    execution_id=context.execution_id,
                    error=str(e),
                    exc_info=True,
                )

    def job_lock(self, job_id: str) -> AsyncContextManager[None]:
        """Per-job lock shared with the control surface"""
        return self.job_locks.acquire(job_id)

    async def execute(
        self,
        job: JobSnapshot,
        trigger_type: TriggerType,
        triggered_by: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Run one execution of ``job``.

        Args:
            job: Snapshot of the job taken at dispatch
            trigger_type: Whether the run was started by a timer or a user
            triggered_by: Id of the user who started a manual run

        Returns:
            The execution record that was appended for this run

        Raises:
            asyncio.CancelledError: If the caller cancelled the run. The target
                is cancelled, a record is still appended and run state is left
                untouched.
        """
        started_at = datetime.now(timezone.utc)
        context = ExecutionContext(
            execution_id=str(uuid.uuid4()),
            job_id=job.id,
            job_key=job.job_key,
            tenant_id=job.tenant_id,
            trigger_type=trigger_type,
            started_at=started_at,
            timeout_seconds=job.timeout_seconds,
            triggered_by=triggered_by,
            app_installation_id=job.app_installation_id,
        )
        params = {**job.params, EXECUTION_PARAM_KEY: context.to_metadata()}

        self._active_executions[context.execution_id] = context
        await self._notify_callbacks("on_start", context)

        logger.info(
            "Started job execution",
            execution_id=context.execution_id,
            trigger_type=trigger_type.value,
            triggered_by=triggered_by,
            target_function=job.target_function,
            **add_job_context(job.id, job.tenant_id, job.job_key),
        )

        result: Any = None
        error_message: Optional[str] = None
        try:
            try:
                result = await self._invoke_with_timeout(job, params, context)
                outcome = ExecutionOutcome.SUCCESS
            except ExecutionTimeoutError as e:
                outcome = ExecutionOutcome.TIMEOUT
                error_message = str(e)
            except asyncio.CancelledError:
                self._record_cancelled(job, context)
                raise
            except Exception as e:
                outcome = ExecutionOutcome.FAILURE
                error_message = str(e) or type(e).__name__
        finally:
            self._active_executions.pop(context.execution_id, None)

        finished_at = datetime.now(timezone.utc)

        update = await self._apply_run_state(
            job.id, outcome, started_at, result, error_message
        )

        record = self._build_record(
            job,
            context,
            finished_at,
            outcome,
            output=storable_result(result)
            if outcome == ExecutionOutcome.SUCCESS
            else None,
            error_message=error_message,
        )
        self.execution_logger.append(record)
        metrics.record_execution(
            trigger_type.value,
            outcome.value,
            (finished_at - started_at).total_seconds(),
        )

        if outcome == ExecutionOutcome.SUCCESS:
            logger.info(
                "Job execution succeeded",
                execution_id=context.execution_id,
                job_id=job.id,
                duration_ms=record.duration_ms,
            )
            await self._notify_callbacks("on_success", context, result=result)
        elif outcome == ExecutionOutcome.TIMEOUT:
            logger.warning(
                "Job execution timed out",
                execution_id=context.execution_id,
                job_id=job.id,
                timeout_seconds=job.timeout_seconds,
            )
            await self._notify_callbacks("on_timeout", context)
        else:
            logger.warning(
                "Job execution failed",
                execution_id=context.execution_id,
                job_id=job.id,
                error=error_message,
            )
            await self._notify_callbacks(
                "on_failure", context, error_message=error_message
            )

        if update is not None and update.auto_disabled:
            metrics.job_auto_disabled_total.inc()
            logger.warning(
                "Job auto-disabled after consecutive failures",
                consecutive_failure_count=update.consecutive_failure_count,
                **add_job_context(job.id, job.tenant_id, job.job_key),
            )
            await self._notify_callbacks("on_auto_disable", context, update=update)

        await self._notify_callbacks(
            "on_complete", context, outcome=outcome, record=record
        )

        return record

    async def _invoke_with_timeout(
        self, job: JobSnapshot, params: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        """
        Await the target, cancelling it if it outlives ``job.timeout_seconds``.

        The target runs in its own task so a timeout or a caller cancellation
        delivers ``CancelledError`` into the target itself.
        """
        task = asyncio.ensure_future(
            self.targets.invoke(job.target_function, params, context)
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=job.timeout_seconds)
        except asyncio.CancelledError:
            await self._cancel_and_drain(task, context)
            raise

        if task in done:
            # Cancelled from inside the target, not by the caller or the deadline
            if task.cancelled():
                raise ExecutionFailure("Target function was cancelled")
            return task.result()

        await self._cancel_and_drain(task, context)
        raise ExecutionTimeoutError(
            f"Execution timed out after {job.timeout_seconds} seconds"
        )

    async def _cancel_and_drain(
        self, task: "asyncio.Future[Any]", context: ExecutionContext
    ) -> None:
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=CANCEL_GRACE_SECONDS)
        if not done:
            logger.error(
                "Target function ignored cancellation",
                execution_id=context.execution_id,
                job_id=context.job_id,
                grace_seconds=CANCEL_GRACE_SECONDS,
            )
        elif not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Target function raised while being cancelled",
                execution_id=context.execution_id,
                error=str(task.exception()),
            )

    async def _apply_run_state(
        self,
        job_id: str,
        outcome: ExecutionOutcome,
        started_at: datetime,
        result: Any,
        error_message: Optional[str],
    ) -> Optional[RunStateUpdate]:
        """
        Write the post-run state, re-reading the job under its lock.

        Returns None when the job was deleted mid-run or the write could not be
        made. Never raises: a broken store must not take down the timer loop.
        """
        try:
            async with self.job_lock(job_id):
                for attempt in range(1, settings.STALE_UPDATE_MAX_ATTEMPTS + 1):
                    current = self.repository.get(job_id)
                    if current is None:
                        logger.info(
                            "Job deleted during execution, run state not written",
                            job_id=job_id,
                        )
                        return None

                    update = self.failure_policy.compute(
                        current,
                        outcome,
                        started_at,
                        result=result,
                        error_message=error_message,
                    )
                    try:
                        self.repository.update_run_state(
                            job_id, update, expected_version=current.version
                        )
                        return update
                    except JobNotFoundError:
                        logger.info(
                            "Job deleted during execution, run state not written",
                            job_id=job_id,
                        )
                        return None
                    except StaleJobError:
                        logger.warning(
                            "Run state update conflicted, retrying",
                            job_id=job_id,
                            attempt=attempt,
                        )

                logger.error(
                    "Gave up writing run state after repeated conflicts",
                    job_id=job_id,
                    attempts=settings.STALE_UPDATE_MAX_ATTEMPTS,
                )
                return None
        except Exception as e:
            logger.error(
                "Failed to write run state",
                job_id=job_id,
                error=str(e),
                exc_info=True,
            )
            return None

    def _record_cancelled(self, job: JobSnapshot, context: ExecutionContext) -> None:
        finished_at = datetime.now(timezone.utc)
        record = self._build_record(
            job,
            context,
            finished_at,
            ExecutionOutcome.FAILURE,
            error_message=CANCELLED_MESSAGE,
        )
        self.execution_logger.append(record)
        metrics.record_execution(
            context.trigger_type.value,
            ExecutionOutcome.FAILURE.value,
            (finished_at - context.started_at).total_seconds(),
        )
        logger.info(
            "Job execution cancelled by caller",
            execution_id=context.execution_id,
            job_id=job.id,
        )

    @staticmethod
    def _build_record(
        job: JobSnapshot,
        context: ExecutionContext,
        finished_at: datetime,
        outcome: ExecutionOutcome,
        output: Any = None,
        error_message: Optional[str] = None,
    ) -> ExecutionRecord:
        duration_ms = int((finished_at - context.started_at).total_seconds() * 1000)
        return ExecutionRecord(
            id=context.execution_id,
            job_id=job.id,
            tenant_id=job.tenant_id,
            job_key=job.job_key,
            target_function=job.target_function,
            trigger_type=context.trigger_type,
            triggered_by=context.triggered_by,
            started_at=context.started_at,
            ended_at=finished_at,
            duration_ms=max(0, duration_ms),
            outcome=outcome,
            input=dict(job.params),
            output=output,
            error_message=error_message,
        )

    def get_active_executions(self) -> List[ExecutionContext]:
        """Get all currently active executions"""
        return list(self._active_executions.values())

    def get_execution_context(self, execution_id: str) -> Optional[ExecutionContext]:
        """Get execution context by ID"""
        return self._active_executions.get(execution_id)

    def _runtimes(self, now: datetime) -> List[Tuple[ExecutionContext, float]]:
        return [
            (context, (now - context.started_at).total_seconds())
            for context in self._active_executions.values()
        ]

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of execution engine"""
        now = datetime.now(timezone.utc)

        stuck_executions = [
            {
                "execution_id": context.execution_id,
                "job_id": context.job_id,
                "tenant_id": context.tenant_id,
                "runtime_seconds": runtime,
            }
            for context, runtime in self._runtimes(now)
            if runtime > settings.STUCK_EXECUTION_SECONDS
        ]

        return {
            "active_executions": len(self._active_executions),
            "stuck_executions": len(stuck_executions),
            "stuck_execution_details": stuck_executions,
            "is_healthy": len(stuck_executions) == 0,
            "checked_at": now.isoformat(),
        }
