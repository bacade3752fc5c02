"""
Rental window validation and time-based billing.

Billing slabs: every full 24 hours is a day; what is left over bills as half a
day when it is under 12 hours and as a full day from 12 hours on. Started
minutes count as whole minutes.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from services.clock import as_utc, utcnow
from services.settlement_math import to_amount, ZERO, UNIT


MINUTES_PER_DAY = 24 * 60
HALF_DAY_MINUTES = 12 * 60
HALF_DAY = Decimal("0.5")


def validate_rental_window(
    pickup_at,
    drop_at,
    now: Optional[datetime] = None,
    min_duration_hours: float = 1,
    past_tolerance_minutes: float = 1,
) -> Optional[str]:
    """Return an error message for a bad window, None when it is fine"""
    now = as_utc(now) or utcnow()
    pickup = as_utc(pickup_at)
    drop = as_utc(drop_at)
    min_duration = timedelta(hours=max(float(min_duration_hours or 0), 0))
    past_tolerance = timedelta(minutes=max(float(past_tolerance_minutes or 0), 0))

    if pickup is None:
        return "Invalid pickup date and time"

    if drop is None:
        return "Invalid drop date and time"

    if pickup < now - past_tolerance:
        return "Pickup date and time cannot be in the past"

    if drop <= pickup:
        return "Drop date and time must be after pickup date and time"

    if drop - pickup < min_duration:
        hours = max(float(min_duration_hours or 0), 1)
        return f"Minimum rental duration is {hours:g} hour{'s' if hours != 1 else ''}"

    return None


def rental_duration_minutes(pickup_at, drop_at) -> int:
    """Elapsed minutes, any started minute counts"""
    pickup = as_utc(pickup_at)
    drop = as_utc(drop_at)
    if pickup is None or drop is None:
        return 0

    seconds = (drop - pickup).total_seconds()
    if seconds <= 0:
        return 0
    return int(math.ceil(seconds / 60))


def billable_days(pickup_at, drop_at) -> Decimal:
    minutes = rental_duration_minutes(pickup_at, drop_at)
    if minutes <= 0:
        return ZERO

    full_days, remainder = divmod(minutes, MINUTES_PER_DAY)
    days = Decimal(full_days)

    if remainder == 0:
        return days
    if remainder < HALF_DAY_MINUTES:
        return days + HALF_DAY
    return days + 1


def calculate_rental_amount(pickup_at, drop_at, price_per_day) -> Tuple[Decimal, Decimal]:
    """(billable days, amount rounded to whole currency units)"""
    days = billable_days(pickup_at, drop_at)
    daily_price = to_amount(price_per_day)
    if daily_price <= 0 or days <= 0:
        return days, ZERO

    amount = (days * daily_price).quantize(UNIT, rounding=ROUND_HALF_UP)
    return days, to_amount(amount)
