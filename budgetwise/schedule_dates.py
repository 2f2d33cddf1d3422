from __future__ import annotations

from calendar import monthrange
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from budgetwise.errors import ValidationError

SUPPORTED_FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
DAYS_IN_WEEK = 7
CENT = Decimal("0.01")
ZERO = Decimal("0")


def compute_next_occurrence(
    current: date,
    frequency: str,
    *,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    month_day: str | None = None,
) -> date:
    """Return the occurrence that follows ``current`` for a schedule.

    ``day_of_week`` counts from Sunday (0) to Saturday (6). ``month_day`` is
    an ``MM-DD`` string. The result is always strictly later than
    ``current``; a yearly February 29 anchor lands on February 28 in
    non-leap years.
    """
    normalized = validate_frequency(frequency)
    if normalized == "daily":
        return current + timedelta(days=1)
    if normalized == "weekly":
        target = _resolve_day_of_week(current, day_of_week)
        days_until = (target - _sunday_based_weekday(current)) % DAYS_IN_WEEK
        return current + timedelta(days=days_until or DAYS_IN_WEEK)
    if normalized == "monthly":
        anchor_day = _resolve_day_of_month(current, day_of_month)
        year, month = _shift_month(current.year, current.month, 1)
        return _clamped_date(year, month, anchor_day)
    month, day = _resolve_month_day(current, month_day)
    return _clamped_date(current.year + 1, month, day)


def first_occurrence(
    start: date,
    frequency: str,
    *,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    month_day: str | None = None,
) -> date:
    """First date on or after ``start`` that satisfies the schedule anchor."""
    normalized = validate_frequency(frequency)
    if normalized == "daily":
        return start
    if normalized == "weekly":
        target = _resolve_day_of_week(start, day_of_week)
        days_until = (target - _sunday_based_weekday(start)) % DAYS_IN_WEEK
        return start + timedelta(days=days_until)
    if normalized == "monthly":
        anchor_day = _resolve_day_of_month(start, day_of_month)
        candidate = _clamped_date(start.year, start.month, anchor_day)
        if candidate < start:
            year, month = _shift_month(start.year, start.month, 1)
            candidate = _clamped_date(year, month, anchor_day)
        return candidate
    month, day = _resolve_month_day(start, month_day)
    candidate = _clamped_date(start.year, month, day)
    if candidate < start:
        candidate = _clamped_date(start.year + 1, month, day)
    return candidate


def months_between(start: date, end: date) -> int:
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day > start.day:
        months += 1
    return max(months, 1)


def monthly_savings_target(remaining: Decimal, today: date, target_date: date) -> Decimal:
    if remaining <= ZERO:
        return ZERO
    months = months_between(today, target_date)
    return (remaining / Decimal(months)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_frequency(frequency: str) -> str:
    normalized = frequency.strip().lower() if frequency else ""
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValidationError(
            "Frequency must be daily, weekly, monthly, or yearly.", field="frequency"
        )
    return normalized


def parse_month_day(value: str) -> tuple[int, int]:
    parts = value.strip().split("-") if value else []
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValidationError("Yearly anchor must use the MM-DD format.", field="day_of_year")
    month, day = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12:
        raise ValidationError("Yearly anchor month must be between 1 and 12.", field="day_of_year")
    # 2000 is a leap year, so February 29 is accepted as an anchor.
    if not 1 <= day <= monthrange(2000, month)[1]:
        raise ValidationError("Yearly anchor day is out of range.", field="day_of_year")
    return month, day


def validate_anchor(
    frequency: str,
    day_of_week: int | None,
    day_of_month: int | None,
    month_day: str | None,
) -> None:
    normalized = validate_frequency(frequency)
    if normalized == "weekly" and day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ValidationError("Day of week must be between 0 and 6.", field="day_of_week")
    if normalized == "monthly" and day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ValidationError("Day of month must be between 1 and 31.", field="day_of_month")
    if normalized == "yearly" and month_day is not None:
        parse_month_day(month_day)


def _sunday_based_weekday(value: date) -> int:
    return value.isoweekday() % DAYS_IN_WEEK


def _resolve_day_of_week(current: date, day_of_week: int | None) -> int:
    if day_of_week is None:
        return _sunday_based_weekday(current)
    return day_of_week


def _resolve_day_of_month(current: date, day_of_month: int | None) -> int:
    if day_of_month is None:
        return current.day
    return day_of_month


def _resolve_month_day(current: date, month_day: str | None) -> tuple[int, int]:
    if month_day is None:
        return current.month, current.day
    return parse_month_day(month_day)


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_month = month - 1 + months
    return year + total_month // 12, total_month % 12 + 1


def _clamped_date(year: int, month: int, day: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(day, last_day))
