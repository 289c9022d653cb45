"""
Trigger system for job scheduling.
"""

from .base import (
    BaseTrigger,
    TriggerCalculationError,
    TriggerError,
    TriggerValidationError,
)
from .cron_trigger import CronTrigger
from .planner import CronPlanner

__all__ = [
    "BaseTrigger",
    "CronPlanner",
    "CronTrigger",
    "TriggerCalculationError",
    "TriggerError",
    "TriggerValidationError",
]
