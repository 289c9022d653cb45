"""
Scheduling system database models.

Durable job definitions with their run state, and the append-only log of
executions. Both tables are tenant scoped.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import validates

from tenant_scheduler.db.base_class import Base


class JobStatus(str, Enum):
    """Run status of a scheduled job"""

    ACTIVE = "active"  # Job is healthy and fires while enabled
    PAUSED = "paused"  # Job was disabled by a human
    ERROR = "error"  # Job tripped its failure threshold and was auto-disabled


class TriggerType(str, Enum):
    """What started an execution"""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ExecutionOutcome(str, Enum):
    """Outcome of one execution"""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledJob(Base):
    """
    Scheduled job definition and run state.

    One row per (tenant, job key). The ``version`` column backs optimistic
    concurrency: every write bumps it and conditional writes compare it.
    """

    __tablename__ = "scheduled_jobs"

    # Identity
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)
    job_key = Column(String(128), nullable=False)
    app_installation_id = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Schedule
    cron_expression = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    enabled = Column(Boolean, nullable=False, default=True)

    # Target
    target_function = Column(String(255), nullable=False)
    params = Column(JSON, nullable=False, default=dict)

    # Execution policy
    timeout_seconds = Column(Integer, nullable=False)
    max_consecutive_failures = Column(Integer, nullable=False, default=3)

    # Run state
    status = Column(
        SQLEnum(JobStatus), nullable=False, default=JobStatus.ACTIVE, index=True
    )
    consecutive_failure_count = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    last_result = Column(JSON, nullable=True)

    # Audit
    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("tenant_id", "job_key", name="uq_scheduled_jobs_tenant_key"),
        Index("idx_scheduled_jobs_enabled_status", "enabled", "status"),
        Index("idx_scheduled_jobs_tenant_created", "tenant_id", "created_at"),
        CheckConstraint("timeout_seconds > 0", name="ck_timeout_seconds_positive"),
        CheckConstraint(
            "max_consecutive_failures > 0", name="ck_max_consecutive_failures_positive"
        ),
        CheckConstraint(
            "consecutive_failure_count >= 0", name="ck_failure_count_non_negative"
        ),
    )

    @validates("params")
    def validate_params(self, key, value):
        """Parameter bag must be a JSON object"""
        if not isinstance(value, dict):
            raise ValueError(f"{key} must be a dictionary")
        return value

    @validates("timeout_seconds", "max_consecutive_failures")
    def validate_positive(self, key, value):
        if value is None or value <= 0:
            raise ValueError(f"{key} must be positive")
        return value


class JobExecutionLog(Base):
    """
    Immutable record of one job execution.

    Carries no foreign key to ``scheduled_jobs`` so history outlives the job.
    """

    __tablename__ = "job_execution_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    job_key = Column(String(128), nullable=True)
    target_function = Column(String(255), nullable=True)

    trigger_type = Column(SQLEnum(TriggerType), nullable=False)
    triggered_by = Column(String(255), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=False)
    duration_ms = Column(Integer, nullable=False)

    outcome = Column(SQLEnum(ExecutionOutcome), nullable=False, index=True)
    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_job_execution_logs_job_started", "job_id", "started_at"),
        Index("idx_job_execution_logs_tenant_started", "tenant_id", "started_at"),
        CheckConstraint("duration_ms >= 0", name="ck_duration_non_negative"),
    )
