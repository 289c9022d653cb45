"""
Scheduled job control surface.

The operations the rest of the application calls: create or update, bulk
register, list, enable or disable, delete, run now, and bootstrap on startup.
Each call is authorized first, validated before anything is stored, and
audited with one ``scheduled_job_action`` log event.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from tenant_scheduler.core.config import settings
from tenant_scheduler.utils.logger import get_logger

from .authorization import AllowAllAuthorizer, BaseAuthorizer, JobAction
from .core.errors import JobValidationError
from .core.models import (
    ExecutionRecord,
    JobFilter,
    JobSnapshot,
    JobSpec,
    RegistrationResult,
    validate_job_key,
)
from .engine import JobRegistry
from .execution_manager import ExecutionEngine
from .repository import JobNotFoundError, SchedulingRepository, StaleJobError
from .targets import TargetFunctionRegistry
from .triggers import CronPlanner, TriggerCalculationError

logger = get_logger(__name__)

MAX_HISTORY_LIMIT = 500

JobSpecInput = Union[JobSpec, Mapping[str, Any]]


class ScheduledJobService:
    """Tenant-scoped job management over the store and the registry"""

    def __init__(
        self,
        repository: Optional[SchedulingRepository] = None,
        registry: Optional[JobRegistry] = None,
        targets: Optional[TargetFunctionRegistry] = None,
        authorizer: Optional[BaseAuthorizer] = None,
        planner: Optional[CronPlanner] = None,
    ):
        if registry is None:
            repository = repository or SchedulingRepository()
            planner = planner or CronPlanner()
            engine = ExecutionEngine(repository, targets=targets, planner=planner)
            registry = JobRegistry(repository, engine, planner)

        self.registry = registry
        self.repository = repository or registry.repository
        self.planner = planner or registry.planner
        self.engine = registry.execution_engine
        self.targets = self.engine.targets
        self.authorizer = authorizer or AllowAllAuthorizer()

    def _log_action(
        self, action: str, tenant_id: Optional[str], user_id: Optional[str], **details
    ) -> None:
        logger.info(
            "scheduled_job_action",
            action=action,
            tenant_id=tenant_id,
            user_id=user_id,
            **details,
        )

    # Lifecycle

    async def start(self) -> int:
        """Start the registry and arm every enabled job"""
        await self.registry.start()
        return await self.bootstrap_on_startup()

    async def stop(self) -> None:
        await self.registry.stop()

    async def bootstrap_on_startup(self, tenant_id: Optional[str] = None) -> int:
        """
        Arm timers for all enabled, non-error jobs (optionally one tenant's).

        System operation: not authorized per user.

        Returns:
            Number of timers armed
        """
        jobs = self.repository.list_enabled(tenant_id)
        armed = self.registry.reconcile(jobs, tenant_id=tenant_id)
        self._log_action(
            "jobs_bootstrapped", tenant_id, None, loaded=len(jobs), armed=armed
        )
        return armed

    # Validation

    def _validate(self, job_key: str, spec: JobSpecInput) -> JobSpec:
        validate_job_key(job_key)
        job_spec = JobSpec.parse(spec)
        self.planner.validate_schedule(job_spec.cron_expression, job_spec.timezone)
        if not self.targets.has(job_spec.target_function):
            raise JobValidationError(
                f"Unknown target function '{job_spec.target_function}'"
            )
        return job_spec

    def _initial_next_run(self, spec: JobSpec) -> Optional[datetime]:
        if not spec.enabled:
            return None
        return self._next_run(spec.cron_expression, spec.timezone)

    def _next_run(self, cron_expression: str, timezone_name: str) -> datetime:
        try:
            return self.planner.next_fire_time(cron_expression, timezone_name, _now())
        except TriggerCalculationError as e:
            raise JobValidationError(str(e)) from e

    def _get_tenant_job(self, tenant_id: str, job_id: str) -> JobSnapshot:
        job = self.repository.get(job_id)
        if job is None or job.tenant_id != tenant_id:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _sync_timer(self, job: JobSnapshot) -> None:
        if not self.registry.is_running:
            logger.debug("Registry not running, timer left to bootstrap", job_id=job.id)
            return
        if job.is_schedulable:
            self.registry.arm(job)
        else:
            self.registry.disarm(job.id)

    async def _store(
        self,
        tenant_id: str,
        job_key: str,
        spec: JobSpec,
        user_id: Optional[str],
        existing: Optional[JobSnapshot],
    ) -> Tuple[JobSnapshot, bool]:
        next_run_at = self._initial_next_run(spec)
        if existing is None:
            job, created = self.repository.upsert(
                tenant_id, job_key, spec, user_id, next_run_at
            )
            self._sync_timer(job)
            return job, created

        async with self.engine.job_lock(existing.id):
            job, created = self.repository.upsert(
                tenant_id, job_key, spec, user_id, next_run_at
            )
            self._sync_timer(job)
            return job, created

    # Operations

    async def create_or_update_job(
        self,
        tenant_id: str,
        job_key: str,
        spec: JobSpecInput,
        user_id: Optional[str] = None,
    ) -> JobSnapshot:
        """
        Upsert the job identified by (tenant, key) and re-arm its timer.

        Raises:
            SchedulingValidationError: Bad key, spec, schedule or target
            AuthorizationError: Caller may not create or update jobs
        """
        existing = self.repository.get_by_key(tenant_id, job_key)
        action = JobAction.UPDATE if existing else JobAction.CREATE
        self.authorizer.authorize(
            tenant_id, user_id, action, existing.id if existing else None
        )

        job_spec = self._validate(job_key, spec)
        job, created = await self._store(tenant_id, job_key, job_spec, user_id, existing)

        self._log_action(
            "job_created" if created else "job_updated",
            tenant_id,
            user_id,
            job_id=job.id,
            job_key=job_key,
            enabled=job.enabled,
        )
        return job

    async def register_jobs(
        self,
        tenant_id: str,
        jobs: Union[Mapping[str, JobSpecInput], Iterable[Tuple[str, JobSpecInput]]],
        user_id: Optional[str] = None,
        app_installation_id: Optional[str] = None,
    ) -> List[RegistrationResult]:
        """
        Register a batch of jobs, typically all jobs declared by one app.

        Every spec is validated before any is stored, so one bad spec rejects
        the whole batch.
        """
        self.authorizer.authorize(tenant_id, user_id, JobAction.CREATE)

        items = list(jobs.items()) if isinstance(jobs, Mapping) else list(jobs)
        if not items:
            raise JobValidationError("At least one job is required")

        validated: List[Tuple[str, JobSpec]] = []
        seen = set()
        errors: List[str] = []
        for job_key, spec in items:
            if job_key in seen:
                errors.append(f"{job_key}: duplicate job key in batch")
                continue
            seen.add(job_key)
            try:
                job_spec = self._validate(job_key, spec)
            except ValueError as e:
                errors.append(f"{job_key}: {e}")
                continue
            if app_installation_id is not None:
                job_spec = job_spec.model_copy(
                    update={"app_installation_id": app_installation_id}
                )
            validated.append((job_key, job_spec))

        if errors:
            raise JobValidationError("Invalid job batch: " + "; ".join(errors), errors)

        results: List[RegistrationResult] = []
        for job_key, job_spec in validated:
            existing = self.repository.get_by_key(tenant_id, job_key)
            job, created = await self._store(
                tenant_id, job_key, job_spec, user_id, existing
            )
            results.append(RegistrationResult(job_key=job_key, job=job, created=created))

        self._log_action(
            "jobs_registered",
            tenant_id,
            user_id,
            app_installation_id=app_installation_id,
            job_keys=[result.job_key for result in results],
            created=sum(1 for result in results if result.created),
        )
        return results

    async def list_jobs(
        self,
        tenant_id: str,
        job_filter: Optional[JobFilter] = None,
        user_id: Optional[str] = None,
    ) -> List[JobSnapshot]:
        self.authorizer.authorize(tenant_id, user_id, JobAction.READ)
        return self.repository.list_jobs(tenant_id, job_filter)

    async def get_job(
        self, tenant_id: str, job_id: str, user_id: Optional[str] = None
    ) -> JobSnapshot:
        """A job of another tenant is reported as not found"""
        self.authorizer.authorize(tenant_id, user_id, JobAction.READ, job_id)
        return self._get_tenant_job(tenant_id, job_id)

    async def set_enabled(
        self,
        tenant_id: str,
        job_id: str,
        enabled: bool,
        user_id: Optional[str] = None,
    ) -> JobSnapshot:
        """
        Enable or disable a job.

        Enabling a job in ``error`` status clears its failure streak, sets it
        back to ``active`` and arms a fresh timer.
        """
        action = JobAction.ENABLE if enabled else JobAction.DISABLE
        self.authorizer.authorize(tenant_id, user_id, action, job_id)

        async with self.engine.job_lock(job_id):
            attempts = settings.STALE_UPDATE_MAX_ATTEMPTS
            for attempt in range(1, attempts + 1):
                current = self._get_tenant_job(tenant_id, job_id)
                next_run_at = (
                    self._next_run(current.cron_expression, current.timezone)
                    if enabled
                    else None
                )
                try:
                    job = self.repository.set_enabled(
                        job_id,
                        enabled,
                        user_id,
                        next_run_at,
                        expected_version=current.version,
                    )
                    break
                except StaleJobError:
                    if attempt == attempts:
                        raise
                    logger.warning(
                        "Enable flag update conflicted, retrying",
                        job_id=job_id,
                        attempt=attempt,
                    )

            self._sync_timer(job)

        self._log_action(
            "job_enabled" if enabled else "job_disabled",
            tenant_id,
            user_id,
            job_id=job_id,
            job_key=job.job_key,
        )
        return job

    async def delete_job(
        self, tenant_id: str, job_id: str, user_id: Optional[str] = None
    ) -> bool:
        """Disarm the job's timer, then remove it. Execution history is kept."""
        self.authorizer.authorize(tenant_id, user_id, JobAction.DELETE, job_id)

        async with self.engine.job_lock(job_id):
            job = self._get_tenant_job(tenant_id, job_id)
            self.registry.disarm(job_id)
            deleted = self.repository.delete(job_id)

        self._log_action(
            "job_deleted", tenant_id, user_id, job_id=job_id, job_key=job.job_key
        )
        return deleted

    async def run_now(
        self, tenant_id: str, job_id: str, user_id: Optional[str] = None
    ) -> ExecutionRecord:
        """
        Execute the job immediately, whatever its enabled state.

        The armed timer is not disturbed. Cancelling the caller cancels the
        execution.
        """
        self.authorizer.authorize(tenant_id, user_id, JobAction.EXECUTE, job_id)
        job = self._get_tenant_job(tenant_id, job_id)

        self._log_action(
            "job_run_manual", tenant_id, user_id, job_id=job_id, job_key=job.job_key
        )
        return await self.registry.run_manual(job, triggered_by=user_id)

    async def get_execution_history(
        self,
        tenant_id: str,
        job_id: Optional[str] = None,
        limit: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> List[ExecutionRecord]:
        """Execution records of a tenant (optionally one job), newest first"""
        self.authorizer.authorize(tenant_id, user_id, JobAction.READ, job_id)

        if limit is None:
            limit = settings.EXECUTION_HISTORY_DEFAULT_LIMIT
        if limit <= 0 or limit > MAX_HISTORY_LIMIT:
            raise JobValidationError(
                f"limit must be between 1 and {MAX_HISTORY_LIMIT}"
            )
        return self.engine.execution_logger.history(
            tenant_id, job_id=job_id, limit=limit
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
