"""Device selection predicates for the tagging runbooks.

The thresholds here decide which devices get tagged, so they follow the
production runbooks exactly, overlaps included: a device past the 365-day
stale cutoff is skipped without include_stale even when max_days admits it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import DEFAULT_MAX_DAYS_INACTIVE, STALE_DEVICE_CUTOFF_DAYS, ConfigurationError
from .models import Device

DevicePredicate = Callable[[Device], bool]


@dataclass(frozen=True)
class InactivityCriteria:
    """Day-range bounds for inactivity tagging.

    Attributes:
        min_days: Minimum days since last seen; 0 disables the lower bound.
        max_days: Maximum days since last seen.
        include_stale: Admit devices with no last-seen data or older than
            the stale cutoff.
    """

    min_days: int = 0
    max_days: int = DEFAULT_MAX_DAYS_INACTIVE
    include_stale: bool = False

    def __post_init__(self) -> None:
        if self.min_days < 0:
            raise ConfigurationError("DaysInactive cannot be negative")
        if self.max_days < self.min_days:
            raise ConfigurationError(
                f"MaxDaysInactive ({self.max_days}) must be >= DaysInactive ({self.min_days})"
            )


def matches_subscription(device: Device, subscriptions: Iterable[str]) -> bool:
    """True if the device runs in one of the subscriptions (exact match)."""
    subscription_id = device.subscription_id
    if not subscription_id:
        return False
    return subscription_id in set(subscriptions)


def matches_inactivity(device: Device, criteria: InactivityCriteria, now: datetime) -> bool:
    """True if an Inactive device falls inside the criteria."""
    if not device.is_inactive:
        return False

    days = device.days_since_last_seen(now)
    if days is None:
        return criteria.include_stale

    if days > STALE_DEVICE_CUTOFF_DAYS and not criteria.include_stale:
        return False

    if criteria.min_days > 0 and days < criteria.min_days:
        return False

    return days <= criteria.max_days


def subscription_predicate(subscriptions: Iterable[str]) -> DevicePredicate:
    wanted = frozenset(subscriptions)
    return lambda device: matches_subscription(device, wanted)


def inactivity_predicate(
    criteria: InactivityCriteria, now: datetime | None = None
) -> DevicePredicate:
    # Pin "now" once so every device is judged against the same instant
    reference = now or datetime.now(UTC)
    return lambda device: matches_inactivity(device, criteria, reference)
