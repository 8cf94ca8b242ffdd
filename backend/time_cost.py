from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
MINUTES_PER_HOUR = 60
HOURS_PER_DAY = 24
MINUTES_PER_DAY = MINUTES_PER_HOUR * HOURS_PER_DAY


def calculate_time_cost(
    amount: Decimal | int | float | str,
    hourly_wage: Decimal | int | float | str,
) -> Decimal:
    """Hours of work needed to pay for ``amount`` at ``hourly_wage``."""
    wage = _coerce_amount(hourly_wage)
    value = _coerce_amount(amount)
    if wage <= ZERO:
        return ZERO
    return value / wage


def format_time_cost(hours: Decimal | int | float | str) -> str:
    value = _coerce_amount(hours)

    total_minutes = _round_whole(value * MINUTES_PER_HOUR)
    if total_minutes < 1:
        return "less than a minute"
    if total_minutes < MINUTES_PER_HOUR:
        return _pluralize(total_minutes, "minute")

    if total_minutes < MINUTES_PER_DAY:
        whole_hours, minutes = divmod(total_minutes, MINUTES_PER_HOUR)
        if minutes == 0:
            return _pluralize(whole_hours, "hour")
        return f"{whole_hours}h {minutes}m"

    days, remaining_hours = divmod(_round_whole(value), HOURS_PER_DAY)
    if remaining_hours == 0:
        return _pluralize(days, "day")
    return f"{days}d {remaining_hours}h"


def _pluralize(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count != 1 else ''}"


def _round_whole(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number.")
    return amount
