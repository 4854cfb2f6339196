"""Recurrence expansion for visit series.

Turns an anchor occurrence plus an optional recurrence rule into the ordered
list of candidate dates. Pure function, no I/O, eagerly materialized.

Rules:
    - No rule: the anchor date alone
    - WEEK: walk the anchor's week (Sunday-based) and every ``interval``-th week
      after it, emitting selected weekdays in ascending order; the anchor date is
      always the first date even when its weekday is not selected
    - MONTH: anchor + k * interval months, clamping the day to the end of short
      months (Jan 31 -> Feb 29 -> Mar 31)
    - EndOnDate is inclusive; EndAfterOccurrences counts the anchor
"""

from __future__ import annotations

from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from carevisit.scheduling.errors import InvalidRule, RecurrenceTooLarge
from carevisit.scheduling.models import (
    AnchorOccurrence,
    EndAfterOccurrences,
    EndOnDate,
    Frequency,
    RecurrenceRule,
    Weekday,
)

MAX_OCCURRENCES = 366


def validate_rule(rule: RecurrenceRule, anchor_date: date) -> None:
    """Check a recurrence rule against its own invariants.

    Args:
        rule: Rule to validate
        anchor_date: Date of the anchor occurrence

    Raises:
        InvalidRule: If any invariant is violated
    """
    if not isinstance(rule.interval, int) or isinstance(rule.interval, bool) or rule.interval < 1:
        raise InvalidRule(f"Interval must be at least 1, got {rule.interval!r}")

    if rule.frequency == Frequency.WEEK:
        if not rule.days_of_week:
            raise InvalidRule("Weekly repeat requires at least one day of week")
        invalid_days = [d for d in rule.days_of_week if not 0 <= int(d) <= 6]
        if invalid_days:
            raise InvalidRule(f"Days of week must be 0 (Sunday) to 6 (Saturday), got {invalid_days}")
    elif rule.frequency == Frequency.MONTH:
        if rule.days_of_week:
            raise InvalidRule("Days of week are only allowed for weekly repeat")
    else:
        raise InvalidRule(f"Unsupported frequency: {rule.frequency!r}")

    end = rule.end_condition
    if isinstance(end, EndAfterOccurrences):
        if not isinstance(end.count, int) or isinstance(end.count, bool) or end.count < 1:
            raise InvalidRule(f"Occurrences must be at least 1, got {end.count!r}")
    elif isinstance(end, EndOnDate):
        if end.end_date < anchor_date:
            raise InvalidRule(f"End date {end.end_date.isoformat()} is before the first event {anchor_date.isoformat()}")
    else:
        raise InvalidRule("Exactly one end condition (end date or occurrences) is required")


def _weekly_dates(anchor_date: date, rule: RecurrenceRule):
    days = sorted(int(d) for d in rule.days_of_week)
    week_start = anchor_date - timedelta(days=int(Weekday.of(anchor_date)))
    while True:
        for offset in days:
            candidate = week_start + timedelta(days=offset)
            if candidate > anchor_date:
                yield candidate
        week_start += timedelta(weeks=rule.interval)


def _monthly_dates(anchor_date: date, rule: RecurrenceRule):
    step = 1
    while True:
        # Offset from the anchor each time so a clamped month does not drag later ones
        yield anchor_date + relativedelta(months=step * rule.interval)
        step += 1


def expand(
    anchor: AnchorOccurrence,
    rule: RecurrenceRule | None,
    *,
    max_occurrences: int = MAX_OCCURRENCES,
) -> list[date]:
    """Expand an anchor and rule into candidate dates.

    Args:
        anchor: First occurrence, authoritative for the first date
        rule: Recurrence rule, or None for a single visit
        max_occurrences: Safety cap on generated dates

    Returns:
        Strictly ascending, unique dates starting with the anchor date

    Raises:
        InvalidRule: If the rule is malformed
        RecurrenceTooLarge: If the rule would generate more than max_occurrences dates
    """
    anchor_date = anchor.visit_date
    if rule is None:
        return [anchor_date]

    validate_rule(rule, anchor_date)

    end = rule.end_condition
    if isinstance(end, EndAfterOccurrences) and end.count > max_occurrences:
        raise RecurrenceTooLarge(max_occurrences)

    generator = _weekly_dates(anchor_date, rule) if rule.frequency == Frequency.WEEK else _monthly_dates(anchor_date, rule)

    dates = [anchor_date]
    for candidate in generator:
        if isinstance(end, EndAfterOccurrences) and len(dates) >= end.count:
            break
        if isinstance(end, EndOnDate) and candidate > end.end_date:
            break
        dates.append(candidate)
        if len(dates) > max_occurrences:
            raise RecurrenceTooLarge(max_occurrences)

    return dates
