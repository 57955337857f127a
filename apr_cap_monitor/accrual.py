"""Daily simple-interest accrual against an annual rate cap."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

DAYS_PER_YEAR = Decimal(365)
_ZERO = Decimal("0")


@dataclass(frozen=True)
class Accrual:
    interest_accrued: Decimal
    interest_above_cap: Decimal


def daily_rate(annual_rate: Decimal) -> Decimal:
    return annual_rate / DAYS_PER_YEAR


def compute_accrual(principal: Decimal, annual_rate: Decimal, apr_cap: Decimal) -> Accrual:
    """Interest for one day and the part of it above the cap.

    A non-positive principal accrues nothing. A non-positive cap means every
    unit of interest is above the cap.
    """
    if principal <= 0:
        return Accrual(interest_accrued=_ZERO, interest_above_cap=_ZERO)

    accrued = principal * daily_rate(annual_rate)
    if apr_cap <= 0:
        return Accrual(interest_accrued=accrued, interest_above_cap=max(_ZERO, accrued))

    capped = principal * daily_rate(apr_cap)
    return Accrual(interest_accrued=accrued, interest_above_cap=max(_ZERO, accrued - capped))
