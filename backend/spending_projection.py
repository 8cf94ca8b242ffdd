from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

ZERO = Decimal("0")
MONTHS_PER_YEAR = 12
DEFAULT_ANNUAL_RETURN = Decimal("0.07")


@dataclass(frozen=True)
class OpportunityCost:
    label: str
    reference_amount: Decimal


# Sorted ascending by reference_amount.
OPPORTUNITY_COSTS: Tuple[OpportunityCost, ...] = (
    OpportunityCost("Cup of coffee", Decimal("5")),
    OpportunityCost("Nice dinner out", Decimal("50")),
    OpportunityCost("Weekend getaway", Decimal("500")),
    OpportunityCost("New iPhone", Decimal("1000")),
    OpportunityCost("Vacation", Decimal("2500")),
    OpportunityCost("Used car", Decimal("10000")),
    OpportunityCost("Down payment on house", Decimal("50000")),
)


@dataclass(frozen=True)
class SpendingProjection:
    monthly: Decimal
    yearly: Decimal
    five_year: Decimal
    five_year_with_growth: Decimal
    opportunity_cost: Optional[str]


def project_spending(
    monthly_amount: Decimal | int | float | str,
    months: int,
) -> Decimal:
    _validate_months(months)
    return _coerce_amount(monthly_amount) * months


def project_spending_with_growth(
    monthly_amount: Decimal | int | float | str,
    months: int,
    annual_return: Decimal | int | float | str = DEFAULT_ANNUAL_RETURN,
) -> Decimal:
    """Future value of ``months`` end-of-month contributions of ``monthly_amount``.

    FV = PMT * ((1 + r)^n - 1) / r with r the monthly rate. A zero rate
    falls back to the linear projection.

    The annuity factor is summed as 1 + (1 + r) + ... + (1 + r)^(n - 1)
    rather than divided by r, so every term is at least 1 for a positive
    rate and the result never drops below the linear projection.
    """
    _validate_months(months)
    amount = _coerce_amount(monthly_amount)
    monthly_rate = _coerce_amount(annual_return) / MONTHS_PER_YEAR
    if monthly_rate == ZERO:
        return amount * months
    growth = 1 + monthly_rate
    factor = ZERO
    compounded = Decimal("1")
    for _ in range(months):
        factor += compounded
        compounded *= growth
    return amount * factor


def get_opportunity_cost(amount: Decimal | int | float | str) -> Optional[str]:
    value = _coerce_amount(amount)
    for item in reversed(OPPORTUNITY_COSTS):
        if value >= item.reference_amount:
            count = int(value // item.reference_amount)
            return f"{count} {item.label}{'s' if count > 1 else ''}"
    return None


def build_projection(monthly_amount: Decimal | int | float | str) -> SpendingProjection:
    amount = _coerce_amount(monthly_amount)
    five_year_with_growth = project_spending_with_growth(amount, 60)
    return SpendingProjection(
        monthly=amount,
        yearly=project_spending(amount, 12),
        five_year=project_spending(amount, 60),
        five_year_with_growth=five_year_with_growth,
        opportunity_cost=get_opportunity_cost(five_year_with_growth),
    )


def _validate_months(months: int) -> None:
    if months < 0:
        raise ValueError("months must be zero or greater.")


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number.")
    return amount
