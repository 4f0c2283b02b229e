"""Cadence parsing and due-time computation on top of APScheduler cron triggers."""

from datetime import datetime
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from trendbot.core.errors import CadenceError
from trendbot.core.time import ensure_utc, normalize_timezone


def parse_cadence(expr: str) -> CronTrigger:
    """
    Parse a 5-field cron expression (minute hour day month day_of_week).

    Raises:
        CadenceError: If the expression is malformed
    """
    if not expr or not expr.strip():
        raise CadenceError("Empty cadence")
    try:
        return CronTrigger.from_crontab(expr.strip(), timezone="UTC")
    except ValueError as e:
        raise CadenceError(f"Invalid cadence '{expr}': {e}") from e


def next_fire_time(cadence: str, after: datetime) -> Optional[datetime]:
    """
    First fire time of ``cadence`` strictly after ``after``.

    Returns:
        Fire time in UTC, or None if the trigger never fires again
    """
    trigger = parse_cadence(cadence)
    after = normalize_timezone(after)
    return ensure_utc(trigger.get_next_fire_time(after, after))


def compute_next_run(cadence: str, last_run_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    """
    When a job is next due.

    A job that has never run is due immediately (``now``). Otherwise the
    first fire time after its last run; that may lie in the past when the
    job is overdue.
    """
    if last_run_at is None:
        return normalize_timezone(now)
    return next_fire_time(cadence, last_run_at)


def is_due(cadence: str, last_run_at: Optional[datetime], now: datetime) -> bool:
    next_run = compute_next_run(cadence, last_run_at, now)
    return next_run is not None and next_run <= normalize_timezone(now)
