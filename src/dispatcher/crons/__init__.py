"""Scheduled runners: APScheduler jobs for the daily and look-ahead runs."""

from dispatcher.crons.scheduler import DispatchScheduler, validate_cron_expression

__all__ = ["DispatchScheduler", "validate_cron_expression"]
