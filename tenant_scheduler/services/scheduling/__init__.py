"""
Tenant-scoped scheduled job system.

Cron-driven jobs per tenant with durable definitions and execution history.

Key Features:
- One live timer per enabled job, re-armed on every schedule change
- At most one execution of a job in flight; overlapping fires are skipped
- Timeouts that cancel the target function rather than abandon it
- Consecutive-failure tracking with auto-disable until a human re-enables
- Append-only execution log that never affects job health when it fails
"""

from .authorization import (
    AllowAllAuthorizer,
    BaseAuthorizer,
    JobAction,
    MemberRole,
    MembershipAuthorizer,
    StaticMembershipLookup,
)
from .core.errors import (
    AuthorizationError,
    ExecutionFailure,
    ExecutionTimeoutError,
    JobValidationError,
    SchedulingFault,
    SchedulingValidationError,
)
from .core.models import (
    ExecutionContext,
    ExecutionRecord,
    FireResult,
    JobFilter,
    JobSnapshot,
    JobSpec,
)
from .engine import JobRegistry, RegistryStatus
from .execution_logger import ExecutionLogger
from .execution_manager import ExecutionEngine
from .repository import (
    DuplicateJobKeyError,
    JobNotFoundError,
    LogWriteFailure,
    SchedulingRepository,
    SchedulingRepositoryError,
    StaleJobError,
)
from .service import ScheduledJobService
from .targets import TargetFunctionRegistry
from .triggers import CronPlanner

__all__ = [
    "AllowAllAuthorizer",
    "AuthorizationError",
    "BaseAuthorizer",
    "CronPlanner",
    "DuplicateJobKeyError",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionFailure",
    "ExecutionLogger",
    "ExecutionRecord",
    "ExecutionTimeoutError",
    "FireResult",
    "JobAction",
    "JobFilter",
    "JobNotFoundError",
    "JobRegistry",
    "JobSnapshot",
    "JobSpec",
    "JobValidationError",
    "LogWriteFailure",
    "MemberRole",
    "MembershipAuthorizer",
    "RegistryStatus",
    "ScheduledJobService",
    "SchedulingFault",
    "SchedulingRepository",
    "SchedulingRepositoryError",
    "SchedulingValidationError",
    "StaleJobError",
    "StaticMembershipLookup",
    "TargetFunctionRegistry",
]
