"""
Proration and billing-cycle arithmetic.

Pure functions, no I/O. All amounts are integer minor units (cents).

    charge = (new_price - old_price) * days_remaining / days_in_cycle

rounded half-up to one minor unit and clamped at zero: a downgrade never
produces an immediate refund, it only changes the next-cycle price.

days_in_cycle is the length of the calendar month containing the cycle
start, not a fixed 30.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from src.config.billing_config import BillingConfig, get_billing_config


def prorate(
    old_price_cents: int,
    new_price_cents: int,
    days_remaining: int,
    days_in_cycle: int,
) -> int:
    """
    Prorated charge for moving from old_price to new_price mid-cycle.

    Raises:
        ValueError: if days_in_cycle is not positive or days_remaining is
            outside [0, days_in_cycle]
    """
    if days_in_cycle <= 0:
        raise ValueError("days_in_cycle must be positive")
    if days_remaining < 0 or days_remaining > days_in_cycle:
        raise ValueError("days_remaining must be within [0, days_in_cycle]")

    delta = Decimal(new_price_cents - old_price_cents)
    raw = delta * Decimal(days_remaining) / Decimal(days_in_cycle)
    charge = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, charge)


def days_in_month(moment: datetime) -> int:
    return calendar.monthrange(moment.year, moment.month)[1]


def add_months(moment: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    """
    Shift moment by whole calendar months.

    The day of month is anchor_day (default: moment's own day) clamped to
    the target month's length, so a 31st anchor lands on Feb 28/29 and
    returns to the 31st in March.
    """
    day = anchor_day or moment.day
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(day, last_day))


def cycle_position(cycle_start: datetime, now: datetime) -> tuple:
    """
    (days_remaining, days_in_cycle) for now within the cycle starting at
    cycle_start.

    On the anchor day itself days_remaining equals the full cycle length.
    """
    cycle_days = days_in_month(cycle_start)
    elapsed = (now.date() - cycle_start.date()).days
    remaining = min(cycle_days, max(0, cycle_days - elapsed))
    return remaining, cycle_days


@dataclass(frozen=True)
class ProrationQuote:
    """Charge now and steady-state price from the next cycle on."""
    from_tier: int
    to_tier: int
    old_price_cents: int
    new_price_cents: int
    days_remaining: int
    days_in_cycle: int
    charge_cents: int
    next_cycle_price_cents: int

    @property
    def is_upgrade(self) -> bool:
        return self.to_tier > self.from_tier

    def to_dict(self) -> dict:
        return {
            "from_tier": self.from_tier,
            "to_tier": self.to_tier,
            "old_price_cents": self.old_price_cents,
            "new_price_cents": self.new_price_cents,
            "days_remaining": self.days_remaining,
            "days_in_cycle": self.days_in_cycle,
            "charge_cents": self.charge_cents,
            "next_cycle_price_cents": self.next_cycle_price_cents,
        }


class ProrationCalculator:
    """Applies prorate() to the configured tier price table."""

    def __init__(self, config: Optional[BillingConfig] = None):
        self.config = config or get_billing_config()

    def quote(
        self,
        from_tier: int,
        to_tier: int,
        cycle_start: datetime,
        now: datetime,
    ) -> ProrationQuote:
        old_price = self.config.tier_price_cents(from_tier)
        new_price = self.config.tier_price_cents(to_tier)
        remaining, cycle_days = cycle_position(cycle_start, now)
        return ProrationQuote(
            from_tier=from_tier,
            to_tier=to_tier,
            old_price_cents=old_price,
            new_price_cents=new_price,
            days_remaining=remaining,
            days_in_cycle=cycle_days,
            charge_cents=prorate(old_price, new_price, remaining, cycle_days),
            next_cycle_price_cents=new_price,
        )
