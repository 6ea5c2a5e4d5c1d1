"""Initiative urgency derived from progress and due date.

Nothing here is stored: the status is recomputed on every read so it can never
drift from the data requests it summarizes. It is advisory only and is never
used as an authorization check.
"""
from __future__ import annotations

from datetime import date, datetime

STATUSES = ("on_track", "at_risk", "overdue", "no_deadline")
AT_RISK_WINDOW_DAYS = 7


def days_until_due(due_date: date | datetime, now: datetime) -> int:
    if isinstance(due_date, datetime):
        return (due_date - now).days
    return (due_date - now.date()).days


def is_overdue(due_date: date | datetime, now: datetime) -> bool:
    if isinstance(due_date, datetime):
        return due_date < now
    # A date-only deadline covers the whole day.
    return due_date < now.date()


def derive_status(
    progress_percentage: int,
    due_date: date | datetime | None,
    now: datetime,
    at_risk_window_days: int = AT_RISK_WINDOW_DAYS,
) -> str:
    """Return ``no_deadline``, ``overdue``, ``on_track`` or ``at_risk``.

    Rules apply in order: no due date, past due (regardless of progress),
    fully collected, due within the at-risk window, otherwise on track.
    """
    if due_date is None:
        return "no_deadline"
    if is_overdue(due_date, now):
        return "overdue"
    if progress_percentage >= 100:
        return "on_track"
    if days_until_due(due_date, now) <= at_risk_window_days:
        return "at_risk"
    return "on_track"
