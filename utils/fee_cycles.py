"""Billing cycle helpers.

Course and service fees are quoted per billing cycle; everything downstream
works in monthly amounts, so every quoted fee goes through ``to_monthly``.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union


CENT = Decimal('0.01')


class BillingCycle(str, Enum):
    MONTHLY = 'MONTHLY'
    QUARTERLY = 'QUARTERLY'
    HALF_YEARLY = 'HALF_YEARLY'
    YEARLY = 'YEARLY'


MONTHS_PER_CYCLE = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.HALF_YEARLY: 6,
    BillingCycle.YEARLY: 12,
}


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or '0'))


def quantize(value) -> Decimal:
    """Round to currency minor units (2 dp, half up)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_cycle(value: Union[BillingCycle, str, None]) -> Optional[BillingCycle]:
    if isinstance(value, BillingCycle):
        return value
    if not value:
        return None
    try:
        return BillingCycle(str(value).strip().upper())
    except ValueError:
        return None


def months_per_cycle(cycle: Union[BillingCycle, str, None]) -> Optional[int]:
    parsed = parse_cycle(cycle)
    if parsed is None:
        return None
    return MONTHS_PER_CYCLE[parsed]


def to_monthly(amount, cycle: Union[BillingCycle, str, None]) -> Decimal:
    """Convert ``amount`` quoted per ``cycle`` into a monthly amount.

    Unknown cycles never raise: the amount is treated as already monthly.
    """
    amount = to_decimal(amount)
    parsed = parse_cycle(cycle)
    if parsed is None:
        # Unrecognised cycle: bill as monthly
        return amount
    if parsed is BillingCycle.MONTHLY:
        return amount
    return amount / MONTHS_PER_CYCLE[parsed]
