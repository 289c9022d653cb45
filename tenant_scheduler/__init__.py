"""Per-tenant cron job scheduling engine."""

__version__ = "1.0.0"
