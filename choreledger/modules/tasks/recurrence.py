"""Next-occurrence calculation for recurring tasks."""

from datetime import UTC, datetime

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from choreledger.domain.task import RecurringConfig


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def next_due_date(config: RecurringConfig, *, previous_due: datetime | None, completed_at: datetime) -> datetime | None:
    """Due date of the occurrence following one that was due at ``previous_due``.

    The schedule is anchored on the previous due date so a late completion does
    not drift the series. If that date is missing the completion time is used.
    Occurrences that would already be in the past are skipped.

    Args:
        config: Recurrence rule
        previous_due: Due date of the occurrence just completed
        completed_at: When it was completed

    Returns:
        Next due date, or None once ``config.end_date`` has passed
    """
    completed_at = _as_utc(completed_at)
    anchor = _as_utc(previous_due) if previous_due else completed_at
    candidate = _advance(config, anchor)
    while candidate <= completed_at:
        candidate = _advance(config, candidate)

    if config.end_date and candidate > _as_utc(isoparse(config.end_date)):
        return None
    return candidate


def _advance(config: RecurringConfig, current: datetime) -> datetime:
    if config.frequency == "daily":
        return current + relativedelta(days=config.interval)

    if config.frequency == "monthly":
        # relativedelta clamps to the last day of shorter months
        return current + relativedelta(months=config.interval)

    if not config.days_of_week:
        return current + relativedelta(weeks=config.interval)

    # Next listed weekday in the current week, else the first listed day `interval` weeks on
    later_days = [day for day in config.days_of_week if day > current.weekday()]
    if later_days:
        return current + relativedelta(days=later_days[0] - current.weekday())
    week_start = current - relativedelta(days=current.weekday())
    return week_start + relativedelta(weeks=config.interval, days=config.days_of_week[0])
