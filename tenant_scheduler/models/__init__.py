from .scheduling import (
    ExecutionOutcome,
    JobExecutionLog,
    JobStatus,
    ScheduledJob,
    TriggerType,
)

__all__ = [
    "ExecutionOutcome",
    "JobExecutionLog",
    "JobStatus",
    "ScheduledJob",
    "TriggerType",
]
