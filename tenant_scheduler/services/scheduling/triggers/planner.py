"""
Cron planning facade.

Pure functions over (expression, timezone, reference instant): validation and
next-fire computation. Deterministic for identical inputs.
"""

from datetime import datetime, timezone
from functools import lru_cache

from .base import TriggerCalculationError, TriggerValidationError, resolve_timezone
from .cron_trigger import CronTrigger


@lru_cache(maxsize=1024)
def _build_trigger(expression: str, timezone_name: str) -> CronTrigger:
    return CronTrigger({"expression": expression, "timezone": timezone_name})


def _normalize(expression: str) -> str:
    return " ".join(str(expression).split())


class CronPlanner:
    """Validates cron schedules and computes fire times"""

    def validate(self, expression: str) -> None:
        """Reject malformed cron expressions (raises TriggerValidationError)."""
        _build_trigger(_normalize(expression), "UTC")

    def validate_timezone(self, timezone_name: str) -> None:
        """Reject unknown IANA timezone names (raises TriggerValidationError)."""
        resolve_timezone(timezone_name)

    def validate_schedule(self, expression: str, timezone_name: str) -> None:
        """
        Reject a schedule that is malformed, names an unknown zone or can
        never fire (``0 0 30 2 *``).
        """
        self.validate_timezone(timezone_name)
        self.validate(expression)
        try:
            self.next_fire_time(expression, timezone_name, datetime.now(timezone.utc))
        except TriggerCalculationError as e:
            raise TriggerValidationError(
                f"Cron expression '{expression}' never fires: {e}"
            ) from e

    def next_fire_time(
        self, expression: str, timezone_name: str, after: datetime
    ) -> datetime:
        """First fire time strictly after ``after``, as an aware UTC datetime."""
        return _build_trigger(_normalize(expression), timezone_name).next_fire_time(
            after
        )
