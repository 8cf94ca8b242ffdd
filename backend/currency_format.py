from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "CA$",
    "AUD": "A$",
}


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def format_currency(amount: Decimal | int | float | str, currency: str = "USD") -> str:
    """Render an amount for display, always with two decimal places."""
    normalized = normalize_currency(currency)
    rounded = _coerce_amount(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    prefix = CURRENCY_SYMBOLS.get(normalized, f"{normalized} ")
    sign = "-" if rounded < 0 else ""
    return f"{sign}{prefix}{abs(rounded):,.2f}"


def parse_currency(value: str) -> Decimal:
    """Recover the decimal amount from a string produced by format_currency."""
    text = value.strip()
    negative = text.startswith("-")
    digits = "".join(ch for ch in text if ch.isdigit() or ch == ".")
    if not digits:
        raise ValueError(f"No amount found in {value!r}.")
    try:
        parsed = Decimal(digits)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if negative:
        parsed = -parsed
    return parsed.quantize(CENTS, rounding=ROUND_HALF_UP)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number.")
    return amount
