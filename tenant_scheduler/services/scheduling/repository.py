"""
Scheduling system database repository.

Durable store for job definitions, their run state and the execution log.
Every method runs in its own short transaction and returns detached snapshots,
so callers never hold a session across an await.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import desc, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tenant_scheduler.models.scheduling import (
    JobExecutionLog,
    JobStatus,
    ScheduledJob,
)
from tenant_scheduler.utils.logger import get_logger

from .core.errors import SchedulingValidationError
from .core.models import (
    ExecutionRecord,
    JobFilter,
    JobSnapshot,
    JobSpec,
    RunStateUpdate,
)

logger = get_logger(__name__)


class SchedulingRepositoryError(Exception):
    """Base exception for scheduling repository operations"""

    pass


class JobNotFoundError(SchedulingRepositoryError):
    """Raised when a requested job is not found"""

    pass


class StaleJobError(SchedulingRepositoryError):
    """Raised when a conditional write loses an optimistic concurrency race"""

    pass


class DuplicateJobKeyError(SchedulingRepositoryError, SchedulingValidationError):
    """Raised when a concurrent insert already claimed (tenant, job key)"""

    pass


class LogWriteFailure(SchedulingRepositoryError):
    """Raised when an execution record cannot be persisted"""

    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_snapshot(job: ScheduledJob) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        tenant_id=job.tenant_id,
        job_key=job.job_key,
        name=job.name,
        description=job.description,
        cron_expression=job.cron_expression,
        timezone=job.timezone,
        enabled=bool(job.enabled),
        target_function=job.target_function,
        params=dict(job.params or {}),
        timeout_seconds=job.timeout_seconds,
        max_consecutive_failures=job.max_consecutive_failures,
        status=JobStatus(job.status),
        consecutive_failure_count=job.consecutive_failure_count,
        version=job.version,
        app_installation_id=job.app_installation_id,
        last_run_at=_as_utc(job.last_run_at),
        next_run_at=_as_utc(job.next_run_at),
        last_error=job.last_error,
        last_result=job.last_result,
        created_by=job.created_by,
        updated_by=job.updated_by,
        created_at=_as_utc(job.created_at),
        updated_at=_as_utc(job.updated_at),
    )


def _to_record(row: JobExecutionLog) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        job_key=row.job_key,
        target_function=row.target_function,
        trigger_type=row.trigger_type,
        triggered_by=row.triggered_by,
        started_at=_as_utc(row.started_at),
        ended_at=_as_utc(row.ended_at),
        duration_ms=row.duration_ms,
        outcome=row.outcome,
        input=row.input,
        output=row.output,
        error_message=row.error_message,
    )


class SchedulingRepository:
    """
    Job store backed by SQLAlchemy.

    Handles all database interactions with proper error handling and
    transaction management. Writes that race with each other are guarded by
    the ``version`` column.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        """Initialize repository with an optional session factory"""
        if session_factory is None:
            from tenant_scheduler.db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Context manager for database transactions"""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Transaction failed: {e}", exc_info=True)
            raise
        finally:
            db.close()

    # Job Management Methods

    def get(self, job_id: str) -> Optional[JobSnapshot]:
        """Get job by ID"""
        try:
            with self.transaction() as db:
                job = db.get(ScheduledJob, job_id)
                return _to_snapshot(job) if job else None
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to get job: {e}") from e

    def get_by_key(self, tenant_id: str, job_key: str) -> Optional[JobSnapshot]:
        """Get job by its (tenant, key) identity"""
        try:
            with self.transaction() as db:
                job = (
                    db.query(ScheduledJob)
                    .filter(
                        ScheduledJob.tenant_id == tenant_id,
                        ScheduledJob.job_key == job_key,
                    )
                    .first()
                )
                return _to_snapshot(job) if job else None
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to get job by key: {e}") from e

    def upsert(
        self,
        tenant_id: str,
        job_key: str,
        spec: JobSpec,
        user_id: Optional[str],
        next_run_at: Optional[datetime],
    ) -> Tuple[JobSnapshot, bool]:
        """
        Create or update the job identified by (tenant, key).

        Returns the stored job and whether it was newly created. Enabling a
        job through an update clears an error streak the same way a manual
        re-enable does.
        """
        now = datetime.now(timezone.utc)
        try:
            with self.transaction() as db:
                job = (
                    db.query(ScheduledJob)
                    .filter(
                        ScheduledJob.tenant_id == tenant_id,
                        ScheduledJob.job_key == job_key,
                    )
                    .first()
                )
                created = job is None

                if created:
                    job = ScheduledJob(
                        tenant_id=tenant_id,
                        job_key=job_key,
                        status=JobStatus.ACTIVE if spec.enabled else JobStatus.PAUSED,
                        consecutive_failure_count=0,
                        created_by=user_id,
                        created_at=now,
                        version=1,
                    )
                    db.add(job)
                else:
                    job.version = job.version + 1
                    if spec.enabled:
                        if job.status == JobStatus.ERROR:
                            job.consecutive_failure_count = 0
                        job.status = JobStatus.ACTIVE
                    elif job.status == JobStatus.ACTIVE:
                        job.status = JobStatus.PAUSED

                job.name = spec.name
                job.description = spec.description
                job.cron_expression = spec.cron_expression
                job.timezone = spec.timezone
                job.enabled = spec.enabled
                job.target_function = spec.target_function
                job.params = dict(spec.params)
                job.timeout_seconds = spec.timeout_seconds
                job.max_consecutive_failures = spec.max_consecutive_failures
                job.app_installation_id = spec.app_installation_id
                job.next_run_at = next_run_at if spec.enabled else None
                job.updated_by = user_id
                job.updated_at = now

                db.flush()

                logger.info(
                    "Created scheduled job" if created else "Updated scheduled job",
                    job_id=job.id,
                    tenant_id=tenant_id,
                    job_key=job_key,
                )

                return _to_snapshot(job), created

        except IntegrityError as e:
            logger.warning(
                "Job upsert lost a race on (tenant, key)",
                tenant_id=tenant_id,
                job_key=job_key,
            )
            raise DuplicateJobKeyError(
                f"Job key '{job_key}' already exists for tenant '{tenant_id}'"
            ) from e
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Job upsert failed: {e}") from e

    def _conditional_update(
        self, db: Session, job_id: str, expected_version: int, values: Dict[str, Any]
    ) -> ScheduledJob:
        values = {
            **values,
            "version": expected_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        updated = (
            db.query(ScheduledJob)
            .filter(ScheduledJob.id == job_id, ScheduledJob.version == expected_version)
            .update(values, synchronize_session=False)
        )
        if updated == 0:
            if db.get(ScheduledJob, job_id) is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            raise StaleJobError(
                f"Job {job_id} was modified concurrently "
                f"(expected version {expected_version})"
            )
        db.expire_all()
        return db.get(ScheduledJob, job_id)

    def update_run_state(
        self, job_id: str, update: RunStateUpdate, expected_version: int
    ) -> JobSnapshot:
        """Persist a run-state transition if the job is still at ``expected_version``"""
        try:
            with self.transaction() as db:
                job = self._conditional_update(
                    db,
                    job_id,
                    expected_version,
                    {
                        "status": update.status,
                        "enabled": update.enabled,
                        "consecutive_failure_count": update.consecutive_failure_count,
                        "last_run_at": update.last_run_at,
                        "next_run_at": update.next_run_at,
                        "last_error": update.last_error,
                        "last_result": update.last_result,
                    },
                )
                logger.debug(
                    "Updated job run state",
                    job_id=job_id,
                    status=update.status.value,
                    consecutive_failure_count=update.consecutive_failure_count,
                )
                return _to_snapshot(job)
        except (JobNotFoundError, StaleJobError):
            raise
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to update run state: {e}") from e

    def set_enabled(
        self,
        job_id: str,
        enabled: bool,
        user_id: Optional[str],
        next_run_at: Optional[datetime],
        expected_version: int,
    ) -> JobSnapshot:
        """
        Enable or disable a job.

        Enabling a job in ``error`` status clears its failure streak.
        """
        try:
            with self.transaction() as db:
                current = db.get(ScheduledJob, job_id)
                if current is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")

                values: Dict[str, Any] = {"enabled": enabled, "updated_by": user_id}
                if enabled:
                    values["status"] = JobStatus.ACTIVE
                    values["next_run_at"] = next_run_at
                    if current.status == JobStatus.ERROR:
                        values["consecutive_failure_count"] = 0
                else:
                    values["next_run_at"] = None
                    if current.status != JobStatus.ERROR:
                        values["status"] = JobStatus.PAUSED

                job = self._conditional_update(db, job_id, expected_version, values)
                logger.info("Set job enabled flag", job_id=job_id, enabled=enabled)
                return _to_snapshot(job)
        except (JobNotFoundError, StaleJobError):
            raise
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to set enabled flag: {e}") from e

    def list_jobs(
        self, tenant_id: str, job_filter: Optional[JobFilter] = None
    ) -> List[JobSnapshot]:
        """List a tenant's jobs, newest first"""
        job_filter = job_filter or JobFilter()
        try:
            with self.transaction() as db:
                query = db.query(ScheduledJob).filter(
                    ScheduledJob.tenant_id == tenant_id
                )
                if job_filter.enabled is not None:
                    query = query.filter(ScheduledJob.enabled == job_filter.enabled)
                if job_filter.status is not None:
                    query = query.filter(ScheduledJob.status == job_filter.status)
                if job_filter.app_installation_id is not None:
                    query = query.filter(
                        ScheduledJob.app_installation_id
                        == job_filter.app_installation_id
                    )
                if job_filter.target_function is not None:
                    query = query.filter(
                        ScheduledJob.target_function == job_filter.target_function
                    )
                rows = query.order_by(desc(ScheduledJob.created_at)).all()
                return [_to_snapshot(row) for row in rows]
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to list jobs: {e}") from e

    def list_enabled(self, tenant_id: Optional[str] = None) -> List[JobSnapshot]:
        """All enabled jobs that are not in error status"""
        try:
            with self.transaction() as db:
                query = db.query(ScheduledJob).filter(
                    ScheduledJob.enabled.is_(True),
                    ScheduledJob.status != JobStatus.ERROR,
                )
                if tenant_id is not None:
                    query = query.filter(ScheduledJob.tenant_id == tenant_id)
                rows = query.order_by(ScheduledJob.created_at).all()
                return [_to_snapshot(row) for row in rows]
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to list enabled jobs: {e}") from e

    def delete(self, job_id: str) -> bool:
        """Delete a job definition. Execution history is kept."""
        try:
            with self.transaction() as db:
                job = db.get(ScheduledJob, job_id)
                if job is None:
                    return False
                db.delete(job)
                logger.info("Deleted job", job_id=job_id)
                return True
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to delete job: {e}") from e

    # Execution Log Methods

    def append_execution(self, record: ExecutionRecord) -> None:
        """Append one immutable execution record"""
        try:
            with self.transaction() as db:
                db.add(
                    JobExecutionLog(
                        id=record.id,
                        job_id=record.job_id,
                        tenant_id=record.tenant_id,
                        job_key=record.job_key,
                        target_function=record.target_function,
                        trigger_type=record.trigger_type,
                        triggered_by=record.triggered_by,
                        started_at=record.started_at,
                        ended_at=record.ended_at,
                        duration_ms=record.duration_ms,
                        outcome=record.outcome,
                        input=record.input,
                        output=record.output,
                        error_message=record.error_message,
                    )
                )
        except SQLAlchemyError as e:
            raise LogWriteFailure(f"Failed to append execution record: {e}") from e

    def list_executions(
        self,
        tenant_id: str,
        job_id: Optional[str] = None,
        job_key: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        """Execution records for a tenant, newest first"""
        try:
            with self.transaction() as db:
                query = db.query(JobExecutionLog).filter(
                    JobExecutionLog.tenant_id == tenant_id
                )
                if job_id:
                    query = query.filter(JobExecutionLog.job_id == job_id)
                if job_key:
                    query = query.filter(JobExecutionLog.job_key == job_key)
                rows = (
                    query.order_by(desc(JobExecutionLog.started_at))
                    .limit(limit)
                    .all()
                )
                return [_to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to list executions: {e}") from e

    def cleanup_old_executions(self, older_than: datetime) -> int:
        """Remove execution records that started before ``older_than``"""
        try:
            with self.transaction() as db:
                deleted_count = (
                    db.query(JobExecutionLog)
                    .filter(JobExecutionLog.started_at < older_than)
                    .delete(synchronize_session=False)
                )

                logger.info(
                    "Cleaned up old executions",
                    deleted_count=deleted_count,
                    older_than=older_than.isoformat(),
                )

                return deleted_count
        except SQLAlchemyError as e:
            raise SchedulingRepositoryError(f"Failed to cleanup executions: {e}") from e

    # Health Check

    def health_check(self) -> Dict[str, Any]:
        """Check database connectivity and summarise job health"""
        health_status: Dict[str, Any] = {
            "database_connection": False,
            "active_jobs": 0,
            "error_jobs": 0,
            "store_healthy": True,
            "issues": [],
        }
        try:
            with self.transaction() as db:
                db.execute(text("SELECT 1")).fetchone()
                health_status["database_connection"] = True

                counts = dict(
                    db.query(ScheduledJob.status, func.count(ScheduledJob.id))
                    .group_by(ScheduledJob.status)
                    .all()
                )
                health_status["active_jobs"] = counts.get(JobStatus.ACTIVE, 0)
                health_status["error_jobs"] = counts.get(JobStatus.ERROR, 0)
        except SQLAlchemyError as e:
            health_status["issues"].append(f"Database connection failed: {e}")
            health_status["store_healthy"] = False

        return health_status
