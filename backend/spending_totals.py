from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, List, Mapping

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_CATEGORY_COLOR = "#95A5A6"

CATEGORY_COLORS: Mapping[str, str] = {
    "coffee": "#8B4513",
    "food": "#FF6B6B",
    "transport": "#4ECDC4",
    "subscriptions": "#9B59B6",
    "entertainment": "#F39C12",
    "shopping": "#E74C3C",
    "other": DEFAULT_CATEGORY_COLOR,
}


@dataclass(frozen=True)
class MonetaryEntry:
    amount: Decimal
    date: datetime


@dataclass(frozen=True)
class PeriodTotals:
    daily: Decimal
    weekly: Decimal
    monthly: Decimal
    yearly: Decimal


@dataclass(frozen=True)
class PeriodBoundaries:
    start_of_day: datetime
    start_of_week: datetime
    start_of_month: datetime
    start_of_year: datetime


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class Trend:
    value: int
    direction: TrendDirection


@dataclass(frozen=True)
class DailySpend:
    day: date
    amount: Decimal


@dataclass(frozen=True)
class CategorySlice:
    name: str
    value: Decimal
    color: str


def period_boundaries(now: datetime) -> PeriodBoundaries:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    # Weeks start on Sunday; weekday() counts from Monday.
    days_since_sunday = (start_of_day.weekday() + 1) % 7
    return PeriodBoundaries(
        start_of_day=start_of_day,
        start_of_week=start_of_day - timedelta(days=days_since_sunday),
        start_of_month=start_of_day.replace(day=1),
        start_of_year=start_of_day.replace(month=1, day=1),
    )


def calculate_period_totals(
    entries: Iterable[MonetaryEntry],
    now: datetime,
) -> PeriodTotals:
    """Sum entries into nested day/week/month/year buckets relative to ``now``.

    An entry only counts toward a narrower bucket when it also falls inside
    every wider one, so a week that started last month contributes just its
    days in the current month to ``weekly``.
    """
    bounds = period_boundaries(now)
    daily = weekly = monthly = yearly = ZERO

    for entry in entries:
        amount = _coerce_amount(entry.amount)
        entry_date = _as_datetime(entry.date, now)
        if entry_date < bounds.start_of_year:
            continue
        yearly += amount
        if entry_date < bounds.start_of_month:
            continue
        monthly += amount
        if entry_date < bounds.start_of_week:
            continue
        weekly += amount
        if entry_date >= bounds.start_of_day:
            daily += amount

    return PeriodTotals(daily=daily, weekly=weekly, monthly=monthly, yearly=yearly)


def calculate_trend(
    current: Decimal | int | float | str,
    previous: Decimal | int | float | str,
) -> Trend:
    current_value = _coerce_amount(current)
    previous_value = _coerce_amount(previous)

    if previous_value == ZERO:
        if current_value > ZERO:
            return Trend(value=100, direction=TrendDirection.UP)
        return Trend(value=0, direction=TrendDirection.NEUTRAL)

    change = (current_value - previous_value) / previous_value * HUNDRED
    if change > ZERO:
        direction = TrendDirection.UP
    elif change < ZERO:
        direction = TrendDirection.DOWN
    else:
        direction = TrendDirection.NEUTRAL
    value = int(abs(change).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return Trend(value=value, direction=direction)


def sum_between(
    entries: Iterable[MonetaryEntry],
    start: datetime,
    end: datetime,
) -> Decimal:
    total = ZERO
    for entry in entries:
        entry_date = _as_datetime(entry.date, start)
        if start <= entry_date < end:
            total += _coerce_amount(entry.amount)
    return total


def daily_series(
    entries: Iterable[MonetaryEntry],
    now: datetime,
    days: int = 30,
) -> List[DailySpend]:
    if days <= 0:
        raise ValueError("days must be greater than zero.")
    today = now.date()
    totals = {today - timedelta(days=offset): ZERO for offset in range(days)}
    for entry in entries:
        entry_day = _as_datetime(entry.date, now).date()
        if entry_day in totals:
            totals[entry_day] += _coerce_amount(entry.amount)
    return [DailySpend(day=day, amount=totals[day]) for day in sorted(totals)]


def category_breakdown(amounts_by_category: Mapping[str, Decimal]) -> List[CategorySlice]:
    return [
        CategorySlice(
            name=category.capitalize(),
            value=_coerce_amount(amount),
            color=CATEGORY_COLORS.get(category, DEFAULT_CATEGORY_COLOR),
        )
        for category, amount in amounts_by_category.items()
    ]


def _as_datetime(value: datetime | date, reference: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=reference.tzinfo)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number.")
    return amount
