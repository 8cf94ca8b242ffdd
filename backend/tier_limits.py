from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional, Union


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


TIER_ORDER = (SubscriptionTier.FREE, SubscriptionTier.PRO, SubscriptionTier.PREMIUM)


class Unlimited(Enum):
    """Marker for a limit with no ceiling.

    Not a number: ordering comparisons against it raise TypeError, so callers
    go through has_capacity() instead of comparing counters directly.
    """

    UNLIMITED = "unlimited"

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited.UNLIMITED

Limit = Union[int, Unlimited]


@dataclass(frozen=True)
class TierLimits:
    max_habits: Limit
    max_entries_per_month: Limit
    max_ai_insights_per_month: Limit


TIER_LIMITS: Mapping[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(
        max_habits=5,
        max_entries_per_month=100,
        max_ai_insights_per_month=10,
    ),
    SubscriptionTier.PRO: TierLimits(
        max_habits=25,
        max_entries_per_month=UNLIMITED,
        max_ai_insights_per_month=100,
    ),
    SubscriptionTier.PREMIUM: TierLimits(
        max_habits=UNLIMITED,
        max_entries_per_month=UNLIMITED,
        max_ai_insights_per_month=UNLIMITED,
    ),
}


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    used: int
    reset_at: datetime


def parse_tier(value: str | SubscriptionTier | None) -> SubscriptionTier:
    if isinstance(value, SubscriptionTier):
        return value
    if value is None or not value.strip():
        return SubscriptionTier.FREE
    normalized = value.strip().lower()
    try:
        return SubscriptionTier(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported subscription tier: {value}") from exc


def limits_for(tier: SubscriptionTier) -> TierLimits:
    return TIER_LIMITS[tier]


def is_unlimited(limit: Limit) -> bool:
    return limit is UNLIMITED


def has_capacity(used: int, limit: Limit) -> bool:
    if is_unlimited(limit):
        return True
    return used < limit


def upgrade_target(tier: SubscriptionTier) -> Optional[SubscriptionTier]:
    position = TIER_ORDER.index(tier)
    if position + 1 >= len(TIER_ORDER):
        return None
    return TIER_ORDER[position + 1]


def register_monthly_usage(
    used: int | None,
    reset_at: datetime | None,
    now: datetime,
    limit: Limit,
) -> UsageDecision:
    """Count one more use against a counter that restarts every calendar month."""
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if reset_at is None or reset_at < month_start:
        return UsageDecision(allowed=True, used=1, reset_at=month_start)

    current = used or 0
    if not has_capacity(current, limit):
        return UsageDecision(allowed=False, used=current, reset_at=reset_at)
    return UsageDecision(allowed=True, used=current + 1, reset_at=reset_at)
