"""
Base trigger interface for job scheduling.

Defines the common interface that trigger types implement: validation of the
trigger configuration and computation of the next fire time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict

import pytz

from ..core.errors import SchedulingValidationError


class TriggerError(Exception):
    """Base exception for trigger-related errors"""

    pass


class TriggerValidationError(TriggerError, SchedulingValidationError):
    """Raised when trigger configuration is invalid"""

    pass


class TriggerCalculationError(TriggerError):
    """Raised when trigger calculation fails"""

    pass


def resolve_timezone(tz_name: str) -> pytz.BaseTzInfo:
    """Resolve an IANA timezone name, rejecting unknown names."""
    if not isinstance(tz_name, str) or not tz_name.strip():
        raise TriggerValidationError("Timezone is required")
    try:
        return pytz.timezone(tz_name.strip())
    except pytz.UnknownTimeZoneError as exc:
        raise TriggerValidationError(f"Invalid timezone: {tz_name}") from exc


class BaseTrigger(ABC):
    """
    Base class for all trigger types.

    Defines the interface for calculating when jobs should run next,
    with proper error handling and timezone support.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize trigger with configuration.

        Args:
            config: Trigger-specific configuration dictionary
        """
        self.config: Dict[str, Any] = dict(config)

        self.timezone = resolve_timezone(self.config.get("timezone", "UTC"))
        self.timezone_name = self.timezone.zone
        self.config["timezone"] = self.timezone_name

        self.validate_config()

    @abstractmethod
    def validate_config(self) -> None:
        """
        Validate trigger configuration.

        Should raise TriggerValidationError if configuration is invalid.
        """
        pass

    @abstractmethod
    def next_fire_time(self, after: datetime) -> datetime:
        """
        Calculate the first fire time strictly after ``after``.

        Args:
            after: Reference instant (naive values are taken as UTC)

        Returns:
            Next fire time as a timezone-aware UTC datetime

        Raises:
            TriggerCalculationError: If calculation fails
        """
        pass

    def normalize_datetime(self, dt: datetime) -> datetime:
        """Normalize datetime to UTC timezone."""
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.config})"
