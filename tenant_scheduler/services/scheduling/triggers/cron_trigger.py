"""
Cron-based trigger implementation.

Provides cron expression based scheduling evaluated in the job's own timezone,
so schedules such as "daily at local midnight" follow the wall clock of that
zone across DST transitions.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from croniter import croniter

from tenant_scheduler.utils.logger import get_logger

from .base import BaseTrigger, TriggerCalculationError, TriggerValidationError

logger = get_logger(__name__)


class CronTrigger(BaseTrigger):
    """
    Cron expression based trigger.

    Supports standard 5-field cron expressions and extended 6-field expressions
    with a leading seconds field.

    Examples:
    - "0 9 * * *" - Daily at 9:00 AM
    - "0 0 * * 1" - Weekly on Mondays at midnight
    - "*/5 * * * *" - Every 5 minutes
    - "*/30 * * * * *" - Every 30 seconds
    """

    FIELD_NAMES_5 = ["minute", "hour", "day", "month", "dow"]
    FIELD_NAMES_6 = ["second", "minute", "hour", "day", "month", "dow"]

    def __init__(self, config: Dict[str, Any]):
        expression = config.get("expression")
        if not isinstance(expression, str):
            raise TriggerValidationError("Cron expression must be a string")
        self.expression = " ".join(expression.split())
        self.has_seconds = len(self.expression.split()) == 6
        super().__init__({**config, "expression": self.expression})

    def _croniter_options(self) -> Dict[str, Any]:
        return {"second_at_beginning": True} if self.has_seconds else {}

    def _iterator(self, base: datetime) -> croniter:
        return croniter(self.expression, base, **self._croniter_options())

    def validate_config(self) -> None:
        """Validate cron trigger configuration"""
        if not self.expression:
            raise TriggerValidationError("Cron expression cannot be empty")

        fields = self.expression.split()
        if len(fields) not in (5, 6):
            raise TriggerValidationError(
                f"Invalid cron expression: expected 5 or 6 fields, got {len(fields)}"
            )

        try:
            self._iterator(datetime.now(timezone.utc).astimezone(self.timezone))
        except (ValueError, KeyError, TypeError) as e:
            raise TriggerValidationError(
                f"Invalid cron expression '{self.expression}': {e}"
            ) from e

    def next_fire_time(self, after: datetime) -> datetime:
        """
        Calculate next fire time based on the cron expression.

        The expression is evaluated against local wall-clock time in the
        trigger's timezone and the result converted back to UTC.
        """
        after_utc = self.normalize_datetime(after)
        local_base = after_utc.astimezone(self.timezone)

        try:
            next_local = self._iterator(local_base).get_next(datetime)
        except (ValueError, KeyError, TypeError) as e:
            raise TriggerCalculationError(f"Cron calculation failed: {e}") from e

        next_run = self.normalize_datetime(next_local)
        if next_run <= after_utc:
            raise TriggerCalculationError(
                f"Cron expression '{self.expression}' produced {next_run.isoformat()}, "
                f"which is not after {after_utc.isoformat()}"
            )

        logger.debug(
            "Calculated next cron run time",
            expression=self.expression,
            timezone=self.timezone_name,
            after=after_utc.isoformat(),
            next_run=next_run.isoformat(),
        )
        return next_run
