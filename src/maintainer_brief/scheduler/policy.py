"""Pure recurrence decisions for the scheduler sweep."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from maintainer_brief.jobs.models import RecurrencePolicy


@dataclass(slots=True, frozen=True)
class ScheduleDecision:
    due: bool
    reason: str


def within_hour_window(now_local: datetime, *, start_hour: int, end_hour: int) -> bool:
    """Whether the local hour lies in the inclusive ``[start_hour, end_hour]`` window."""

    return start_hour <= now_local.hour <= end_hour


def is_due(  # noqa: PLR0913
    recurrence: RecurrencePolicy,
    *,
    now_local: datetime,
    last_created_at: datetime | None,
    weekday: int = 0,
    min_hours_between_runs: float = 23.0,
    biweekly_min_days: float = 13.0,
) -> ScheduleDecision:
    """Decide whether a repository with ``recurrence`` should be analyzed now.

    ``now_local`` carries the scheduler timezone so the weekday check happens
    in local time. ``weekday`` follows ``datetime.weekday()`` (0 = Monday).
    """

    if recurrence is RecurrencePolicy.MANUAL:
        return ScheduleDecision(due=False, reason="manual")

    since_last: timedelta | None = None
    if last_created_at is not None:
        since_last = now_local - last_created_at
        if since_last < timedelta(hours=min_hours_between_runs):
            return ScheduleDecision(due=False, reason="recent_job")

    if now_local.weekday() != weekday:
        return ScheduleDecision(due=False, reason="wrong_weekday")

    if recurrence is RecurrencePolicy.WEEKLY:
        return ScheduleDecision(due=True, reason="weekly")

    if since_last is not None and since_last < timedelta(days=biweekly_min_days):
        return ScheduleDecision(due=False, reason="biweekly_interval")
    return ScheduleDecision(due=True, reason="biweekly")
