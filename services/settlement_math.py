"""
Money math for advances, late fees, damage charges and refunds.

Everything here is pure. Amount helpers never raise on malformed numbers:
None, NaN, infinities, garbage strings and negatives clamp to 0. Inputs are
validated at the boundary before they get here.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Dict, Any

from database.models.booking import BookingStatus, RefundStatus
from database.models.rental import PaymentStatus
from services.clock import as_utc, utcnow
from services.exceptions import RefundNotAllowed, ValidationFailed


ZERO = Decimal("0")
CENT = Decimal("0.01")
UNIT = Decimal("1")
HUNDRED = Decimal("100")

LATE_RATE_MULTIPLIER = Decimal("1.5")
DEFAULT_GRACE_PERIOD_HOURS = Decimal("1")

# Advance tiers
ADVANCE_RATE_LOW = Decimal("0.30")     # below 3000
ADVANCE_RATE_MID = Decimal("0.25")     # 3000..10000
ADVANCE_RATE_HIGH = Decimal("0.20")    # above 10000
ADVANCE_LOW_LIMIT = Decimal("3000")
ADVANCE_MID_LIMIT = Decimal("10000")

ADVANCE_PAID_STATUSES = (PaymentStatus.PARTIALLY_PAID, PaymentStatus.FULLY_PAID)


def _field(entity, name: str, default=None):
    if entity is None:
        return default
    if isinstance(entity, dict):
        return entity.get(name, default)
    return getattr(entity, name, default)


def to_decimal(value, fallback: Decimal = ZERO) -> Decimal:
    """Finite Decimal or fallback. Sign is kept."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return fallback
    if not number.is_finite():
        return fallback
    return number


def to_amount(value, fallback: Decimal = ZERO) -> Decimal:
    """Non-negative amount with 2 fraction digits"""
    number = to_decimal(value, None)
    if number is None or number < 0:
        return fallback
    return number.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AdvanceBreakdown:
    final_amount: Decimal
    advance_rate: Decimal
    advance_required: Decimal
    remaining_amount: Decimal


def get_advance_rate(final_amount) -> Decimal:
    amount = to_amount(final_amount)
    if amount <= 0:
        return ADVANCE_RATE_LOW
    if amount < ADVANCE_LOW_LIMIT:
        return ADVANCE_RATE_LOW
    if amount <= ADVANCE_MID_LIMIT:
        return ADVANCE_RATE_MID
    return ADVANCE_RATE_HIGH


def calculate_advance_breakdown(final_amount) -> AdvanceBreakdown:
    """
    Split a final price into the advance due now and the rest due at return.

    The tier is picked from the final amount as given (2 decimals); only the
    advance is rounded to whole currency units. advance + remaining always
    equals the final amount.
    """
    final = to_amount(final_amount)
    rate = get_advance_rate(final)
    advance = max((final * rate).quantize(UNIT, rounding=ROUND_HALF_UP), ZERO)
    remaining = max(final - advance, ZERO)

    return AdvanceBreakdown(
        final_amount=to_amount(final),
        advance_rate=rate,
        advance_required=to_amount(advance),
        remaining_amount=to_amount(remaining),
    )


def resolve_final_amount(entity) -> Decimal:
    """Canonical final price: positive final_amount, else total_amount, else 0"""
    final = to_amount(_field(entity, "final_amount"))
    if final > 0:
        return final

    total = to_amount(_field(entity, "total_amount"))
    if total > 0:
        return total

    return ZERO


def is_advance_paid_status(status) -> bool:
    return status in ADVANCE_PAID_STATUSES


def resolve_advance_paid(entity) -> Decimal:
    advance_paid = to_amount(_field(entity, "advance_paid"))
    if advance_paid > 0:
        return advance_paid

    if is_advance_paid_status(_field(entity, "payment_status")):
        return to_amount(_field(entity, "advance_required"))

    return ZERO


def normalize_grace_period_hours(value, default=DEFAULT_GRACE_PERIOD_HOURS) -> Decimal:
    hours = to_decimal(value, None)
    if hours is None or hours < 0:
        return to_decimal(default, DEFAULT_GRACE_PERIOD_HOURS)
    return hours


def calculate_hourly_late_rate(per_day_price, multiplier=LATE_RATE_MULTIPLIER) -> Decimal:
    """Pro-rated hourly price with a late premium (50% by default)"""
    per_day = to_amount(per_day_price)
    if per_day <= 0:
        return ZERO
    factor = to_decimal(multiplier, LATE_RATE_MULTIPLIER)
    return (per_day / Decimal(24) * factor).quantize(CENT, rounding=ROUND_HALF_UP)


def overdue_threshold(drop_at, grace_period_hours) -> Optional[datetime]:
    drop = as_utc(drop_at)
    if drop is None:
        return None
    grace = normalize_grace_period_hours(grace_period_hours)
    return drop + timedelta(hours=float(grace))


def calculate_late_hours(drop_at, grace_period_hours, now: datetime) -> int:
    """Whole hours past drop time + grace, rounded down"""
    threshold = overdue_threshold(drop_at, grace_period_hours)
    current = as_utc(now)
    if threshold is None or current is None:
        return 0

    overdue_seconds = (current - threshold).total_seconds()
    if overdue_seconds <= 0:
        return 0
    return int(math.floor(overdue_seconds / 3600))


def calculate_late_fee(late_hours, hourly_late_rate) -> Decimal:
    hours = max(int(to_decimal(late_hours)), 0)
    return to_amount(Decimal(hours) * to_amount(hourly_late_rate))


def clamp_percentage(value) -> Decimal:
    percentage = to_amount(value)
    return min(percentage, HUNDRED)


def chargeable_damage_cost(entity) -> Decimal:
    """Damage cost after the external subscription discount"""
    if not _field(entity, "damage_detected"):
        return ZERO

    cost = to_amount(_field(entity, "damage_cost"))
    discount = clamp_percentage(_field(entity, "damage_discount_percentage"))
    return to_amount(cost * (HUNDRED - discount) / HUNDRED)


def calculate_full_payment_amount(entity) -> Decimal:
    """Amount collected at return: unpaid price + late fee + damage"""
    final = resolve_final_amount(entity)
    advance_paid = resolve_advance_paid(entity)
    late_fee = to_amount(_field(entity, "late_fee"))
    return to_amount(max(final - advance_paid, ZERO) + late_fee + chargeable_damage_cost(entity))


# Refunds

def resolve_total_paid(booking) -> Decimal:
    return to_amount(resolve_advance_paid(booking) + to_amount(_field(booking, "full_payment_amount")))


def is_cancelled_before_pickup(booking) -> bool:
    if _field(booking, "booking_status") != BookingStatus.CANCELLED:
        return False

    pickup_at = as_utc(_field(booking, "pickup_at"))
    cancelled_at = as_utc(
        _field(booking, "cancelled_at") or _field(booking, "updated_at") or _field(booking, "created_at")
    )
    if pickup_at is None or cancelled_at is None:
        return False
    return cancelled_at < pickup_at


def validate_refund_eligibility(booking) -> Dict[str, Any]:
    if _field(booking, "booking_status") not in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
        raise RefundNotAllowed("Refund allowed only for cancelled or completed bookings")

    if not is_advance_paid_status(_field(booking, "payment_status")):
        raise RefundNotAllowed("Refund allowed only for partially paid or fully paid bookings")

    if _field(booking, "refund_status") == RefundStatus.PROCESSED:
        raise RefundNotAllowed("Refund is already processed for this booking")

    total_paid = resolve_total_paid(booking)
    if total_paid <= 0:
        raise RefundNotAllowed("No paid amount available for refund")

    advance_paid = resolve_advance_paid(booking)
    late_fee = to_amount(_field(booking, "late_fee"))
    late_hours = max(int(to_decimal(_field(booking, "late_hours"))), 0)
    damage_cost = chargeable_damage_cost(booking)
    max_refundable = to_amount(max(total_paid - damage_cost, ZERO))

    if max_refundable <= 0:
        raise RefundNotAllowed("No refund allowed after damage charges adjustment")

    if late_hours > 0 and late_fee > advance_paid:
        raise RefundNotAllowed("No refund allowed because overdue penalty exceeds advance paid")

    return {
        "total_paid": total_paid,
        "max_refundable": max_refundable,
        "advance_paid": advance_paid,
        "late_fee": late_fee,
        "damage_cost": damage_cost,
    }


def calculate_refund_amount(booking, refund_amount=None, refund_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Full refunds are fixed to the advance and only for cancellations before
    pickup; anything else is a manual partial refund.
    """
    eligibility = validate_refund_eligibility(booking)
    requested = to_amount(refund_amount)
    has_requested = requested > 0
    wants_full = str(refund_type or "").strip().upper() == "FULL"

    if is_cancelled_before_pickup(booking):
        full_amount = to_amount(min(eligibility["advance_paid"], eligibility["max_refundable"]))
        if full_amount <= 0:
            raise RefundNotAllowed("No advance amount available for full refund")
        if has_requested and requested != full_amount:
            raise ValidationFailed(
                f"This booking qualifies for fixed full refund of {full_amount}. "
                "Partial/manual amount is not allowed."
            )
        return {"refund_amount": full_amount, "refund_type": "Full", "total_paid": eligibility["total_paid"]}

    if wants_full:
        raise RefundNotAllowed("Full refund is allowed only when cancellation happens before pickup")

    if not has_requested:
        raise ValidationFailed("refund_amount is required for partial refund")

    if requested > eligibility["max_refundable"]:
        raise ValidationFailed(f"refund_amount cannot exceed refundable amount ({eligibility['max_refundable']})")

    return {"refund_amount": requested, "refund_type": "Partial", "total_paid": eligibility["total_paid"]}


def apply_refund_to_booking(booking, refund_amount=None, refund_type=None, reason: str = "", now=None) -> Dict[str, Any]:
    """Mutates the booking: drains the full payment first, then the advance"""
    now = as_utc(now) or utcnow()
    calculation = calculate_refund_amount(booking, refund_amount, refund_type)
    amount = calculation["refund_amount"]
    total_paid = calculation["total_paid"]

    full_payment = to_amount(booking.full_payment_amount)
    from_full_payment = min(full_payment, amount)
    left_to_refund = amount - from_full_payment

    advance_paid = resolve_advance_paid(booking)
    from_advance = min(advance_paid, left_to_refund)

    booking.full_payment_amount = to_amount(full_payment - from_full_payment)
    booking.advance_paid = to_amount(advance_paid - from_advance)
    booking.refund_amount = amount
    booking.refund_status = RefundStatus.PROCESSED
    booking.refund_reason = str(reason or "").strip()
    booking.refund_processed_at = now
    booking.remaining_amount = ZERO

    if amount >= total_paid:
        booking.payment_status = PaymentStatus.REFUNDED
    elif booking.booking_status == BookingStatus.CANCELLED:
        booking.payment_status = PaymentStatus.PARTIALLY_PAID
    else:
        booking.payment_status = PaymentStatus.FULLY_PAID

    return {
        "refund_amount": amount,
        "refund_type": calculation["refund_type"],
        "total_paid_before_refund": total_paid,
        "total_paid_after_refund": to_amount(booking.advance_paid + booking.full_payment_amount),
    }
