"""
Core scheduling data models and types.

Defines the value objects passed between the job store, the execution engine,
the job registry and the control surface. Store reads return immutable
snapshots; nothing outside the repository touches ORM rows.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from tenant_scheduler.core.config import settings
from tenant_scheduler.models.scheduling import (
    ExecutionOutcome,
    JobStatus,
    TriggerType,
)

from .errors import JobValidationError

JOB_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
TARGET_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
JOB_KEY_MAX_LENGTH = 128

# Reserved parameter key carrying execution metadata into the target function
EXECUTION_PARAM_KEY = "_execution"


def validate_job_key(job_key: str) -> str:
    """Validate an externally supplied job key"""
    if not isinstance(job_key, str) or not job_key:
        raise JobValidationError("Job key is required")
    if len(job_key) > JOB_KEY_MAX_LENGTH:
        raise JobValidationError(
            f"Job key must be at most {JOB_KEY_MAX_LENGTH} characters"
        )
    if not JOB_KEY_PATTERN.match(job_key):
        raise JobValidationError(
            "Job key must contain only alphanumeric characters, hyphens, "
            "and underscores"
        )
    return job_key


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobSpec(BaseModel):
    """Caller-supplied definition of a job (everything except run state)"""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    cron_expression: str = Field(..., description="Cron expression (5 or 6 fields)")
    timezone: str = Field(default_factory=lambda: settings.DEFAULT_TIMEZONE)
    target_function: str
    params: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    timeout_seconds: int = Field(..., description="Execution deadline in seconds")
    max_consecutive_failures: int = Field(
        default_factory=lambda: settings.DEFAULT_MAX_CONSECUTIVE_FAILURES
    )
    app_installation_id: Optional[str] = None

    @field_validator("cron_expression")
    @classmethod
    def _normalise_expression(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("Cron expression cannot be empty")
        return v

    @field_validator("target_function")
    @classmethod
    def _validate_target_name(cls, v: str) -> str:
        if not TARGET_NAME_PATTERN.match(v):
            raise ValueError("Function name must be a valid identifier")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        if v > settings.MAX_TIMEOUT_SECONDS:
            raise ValueError(
                f"timeout_seconds must be at most {settings.MAX_TIMEOUT_SECONDS}"
            )
        return v

    @field_validator("max_consecutive_failures")
    @classmethod
    def _validate_failure_threshold(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_consecutive_failures must be at least 1")
        return v

    @field_validator("params")
    @classmethod
    def _validate_params(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if EXECUTION_PARAM_KEY in v:
            raise ValueError(f"'{EXECUTION_PARAM_KEY}' is a reserved parameter name")
        return v

    @classmethod
    def parse(cls, data: Any) -> "JobSpec":
        """Build a spec from a mapping, raising JobValidationError on bad input."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]
            raise JobValidationError(
                "Invalid job definition: " + "; ".join(errors), errors
            ) from exc


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable view of a stored job"""

    id: str
    tenant_id: str
    job_key: str
    name: str
    cron_expression: str
    timezone: str
    enabled: bool
    target_function: str
    params: Dict[str, Any]
    timeout_seconds: int
    max_consecutive_failures: int
    status: JobStatus
    consecutive_failure_count: int
    version: int
    description: Optional[str] = None
    app_installation_id: Optional[str] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_schedulable(self) -> bool:
        """Whether the job should own a live timer"""
        return self.enabled and self.status != JobStatus.ERROR

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("last_run_at", "next_run_at", "created_at", "updated_at"):
            data[key] = _iso(getattr(self, key))
        return data


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable fact about one run"""

    id: str
    job_id: str
    tenant_id: str
    trigger_type: TriggerType
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    outcome: ExecutionOutcome
    job_key: Optional[str] = None
    target_function: Optional[str] = None
    triggered_by: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error_message: Optional[str] = None

    @property
    def was_successful(self) -> bool:
        return self.outcome == ExecutionOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = asdict(self)
        data["trigger_type"] = self.trigger_type.value
        data["outcome"] = self.outcome.value
        data["started_at"] = _iso(self.started_at)
        data["ended_at"] = _iso(self.ended_at)
        return data


@dataclass
class ExecutionContext:
    """Context information for one job execution"""

    execution_id: str
    job_id: str
    job_key: str
    tenant_id: str
    trigger_type: TriggerType
    started_at: datetime
    timeout_seconds: int
    triggered_by: Optional[str] = None
    app_installation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> Dict[str, Any]:
        """Metadata merged into the target's parameters"""
        return {
            "execution_id": self.execution_id,
            "tenant_id": self.tenant_id,
            "job_id": self.job_id,
            "job_key": self.job_key,
            "app_installation_id": self.app_installation_id,
            "trigger_type": self.trigger_type.value,
            "triggered_by": self.triggered_by,
        }


@dataclass(frozen=True)
class RunStateUpdate:
    """Run-state transition computed after one execution"""

    status: JobStatus
    enabled: bool
    consecutive_failure_count: int
    last_run_at: datetime
    next_run_at: Optional[datetime]
    last_error: Optional[str]
    last_result: Any = None
    auto_disabled: bool = False


@dataclass
class JobFilter:
    """Optional filters for listing jobs"""

    enabled: Optional[bool] = None
    status: Optional[JobStatus] = None
    app_installation_id: Optional[str] = None
    target_function: Optional[str] = None


class FireResult(str, Enum):
    """What happened when a timer fired"""

    DISPATCHED = "dispatched"
    SKIPPED_OVERLAP = "skipped_overlap"
    NOT_FOUND = "not_found"
    NOT_ENABLED = "not_enabled"


@dataclass
class RegistrationResult:
    """Per-job result of a bulk registration"""

    job_key: str
    job: JobSnapshot
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_key": self.job_key,
            "created": self.created,
            "job": self.job.to_dict(),
        }


