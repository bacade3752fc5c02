from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from database.models import BookingStatus, PaymentStatus, RefundStatus
from services.exceptions import RefundNotAllowed, ValidationFailed
from services.settlement_math import (
    apply_refund_to_booking,
    calculate_advance_breakdown,
    calculate_full_payment_amount,
    calculate_hourly_late_rate,
    calculate_late_fee,
    calculate_late_hours,
    calculate_refund_amount,
    chargeable_damage_cost,
    resolve_advance_paid,
    resolve_final_amount,
    to_amount,
)


DROP = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


class TestAdvanceBreakdown:
    @pytest.mark.parametrize(
        "final, rate, advance, remaining",
        [
            ("2000", "0.30", "600", "1400"),
            ("2999", "0.30", "900", "2099"),
            ("3000", "0.25", "750", "2250"),
            ("5000", "0.25", "1250", "3750"),
            ("10000", "0.25", "2500", "7500"),
            ("10001", "0.20", "2000", "8001"),
            ("15000", "0.20", "3000", "12000"),
        ],
    )
    def test_tiers(self, final, rate, advance, remaining):
        breakdown = calculate_advance_breakdown(Decimal(final))
        assert breakdown.advance_rate == Decimal(rate)
        assert breakdown.advance_required == Decimal(advance)
        assert breakdown.remaining_amount == Decimal(remaining)

    @pytest.mark.parametrize("final", ["0.49", "1", "333.33", "2999.5", "4444.44", "10000.4", "99999.99"])
    def test_no_leakage(self, final):
        breakdown = calculate_advance_breakdown(final)
        assert breakdown.final_amount == Decimal(final)
        assert breakdown.advance_required + breakdown.remaining_amount == Decimal(final)
        assert breakdown.advance_required == breakdown.advance_required.to_integral_value()

    def test_tier_from_amount_before_rounding(self):
        breakdown = calculate_advance_breakdown(Decimal("2999.60"))

        assert breakdown.final_amount == Decimal("2999.60")
        assert breakdown.advance_rate == Decimal("0.30")
        assert breakdown.advance_required == Decimal("900.00")
        assert breakdown.remaining_amount == Decimal("2099.60")

    def test_mid_tier_starts_at_3000(self):
        assert calculate_advance_breakdown("2999.99").advance_rate == Decimal("0.30")
        assert calculate_advance_breakdown("3000.00").advance_rate == Decimal("0.25")

    def test_malformed_input_clamps_to_zero(self):
        breakdown = calculate_advance_breakdown("garbage")
        assert breakdown.final_amount == 0
        assert breakdown.advance_required == 0
        assert breakdown.remaining_amount == 0


class TestAmountHelpers:
    @pytest.mark.parametrize("value", [None, "garbage", -5, float("nan"), float("inf"), Decimal("Infinity"), True])
    def test_to_amount_clamps(self, value):
        assert to_amount(value) == Decimal("0")

    def test_to_amount_rounds_half_up(self):
        assert to_amount("10.005") == Decimal("10.01")

    def test_resolve_final_amount_prefers_final(self):
        assert resolve_final_amount({"final_amount": "1800", "total_amount": "2000"}) == Decimal("1800.00")

    def test_resolve_final_amount_falls_back_to_total(self):
        assert resolve_final_amount({"final_amount": 0, "total_amount": "1500"}) == Decimal("1500.00")
        assert resolve_final_amount({}) == Decimal("0")

    def test_resolve_advance_paid_from_status(self):
        entity = {"advance_paid": 0, "payment_status": PaymentStatus.PARTIALLY_PAID, "advance_required": 600}
        assert resolve_advance_paid(entity) == Decimal("600.00")

    def test_resolve_advance_paid_unpaid(self):
        entity = {"advance_paid": 0, "payment_status": PaymentStatus.UNPAID, "advance_required": 600}
        assert resolve_advance_paid(entity) == Decimal("0")


class TestLateFees:
    def test_hourly_rate_has_fifty_percent_premium(self):
        assert calculate_hourly_late_rate(Decimal("2000")) == Decimal("125.00")
        assert calculate_hourly_late_rate(Decimal("1000")) == Decimal("62.50")
        assert calculate_hourly_late_rate(0) == Decimal("0")

    @pytest.mark.parametrize(
        "after_drop, expected",
        [
            (timedelta(minutes=30), 0),
            (timedelta(hours=1), 0),
            (timedelta(hours=1, minutes=59), 0),
            (timedelta(hours=2), 1),
            (timedelta(hours=3, minutes=59), 2),
            (timedelta(hours=4), 3),
        ],
    )
    def test_late_hours_after_one_hour_grace(self, after_drop, expected):
        assert calculate_late_hours(DROP, 1, DROP + after_drop) == expected

    def test_late_hours_before_drop(self):
        assert calculate_late_hours(DROP, 1, DROP - timedelta(hours=5)) == 0

    def test_negative_grace_uses_default(self):
        assert calculate_late_hours(DROP, -3, DROP + timedelta(hours=2)) == 1

    def test_late_fee(self):
        assert calculate_late_fee(3, Decimal("125")) == Decimal("375.00")
        assert calculate_late_fee(-1, Decimal("125")) == Decimal("0")


class TestDamageAndFullPayment:
    def test_damage_with_discount(self):
        entity = {"damage_detected": True, "damage_cost": 1000, "damage_discount_percentage": 20}
        assert chargeable_damage_cost(entity) == Decimal("800.00")

    def test_no_damage(self):
        assert chargeable_damage_cost({"damage_detected": False, "damage_cost": 1000}) == Decimal("0")

    def test_discount_is_capped(self):
        entity = {"damage_detected": True, "damage_cost": 1000, "damage_discount_percentage": 150}
        assert chargeable_damage_cost(entity) == Decimal("0")

    def test_full_payment_amount(self):
        entity = {
            "final_amount": 2000,
            "advance_paid": 600,
            "payment_status": PaymentStatus.PARTIALLY_PAID,
            "late_fee": 375,
            "damage_detected": True,
            "damage_cost": 1000,
            "damage_discount_percentage": 20,
        }
        assert calculate_full_payment_amount(entity) == Decimal("2575.00")


def closed_booking(**overrides):
    pickup = datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc)
    fields = dict(
        booking_status=BookingStatus.COMPLETED,
        payment_status=PaymentStatus.FULLY_PAID,
        refund_status=RefundStatus.NONE,
        advance_paid=Decimal("600"),
        advance_required=Decimal("600"),
        full_payment_amount=Decimal("1400"),
        late_fee=Decimal("0"),
        late_hours=0,
        damage_detected=False,
        damage_cost=Decimal("0"),
        damage_discount_percentage=Decimal("0"),
        pickup_at=pickup,
        cancelled_at=None,
        updated_at=None,
        created_at=pickup - timedelta(days=2),
        refund_amount=Decimal("0"),
        refund_reason=None,
        refund_processed_at=None,
        remaining_amount=Decimal("0"),
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def cancelled_before_pickup():
    booking = closed_booking(
        booking_status=BookingStatus.CANCELLED,
        payment_status=PaymentStatus.PARTIALLY_PAID,
        full_payment_amount=Decimal("0"),
    )
    booking.cancelled_at = booking.pickup_at - timedelta(days=1)
    return booking


class TestRefunds:
    def test_full_refund_before_pickup(self):
        result = calculate_refund_amount(cancelled_before_pickup())
        assert result["refund_type"] == "Full"
        assert result["refund_amount"] == Decimal("600.00")

    def test_manual_amount_rejected_for_fixed_full_refund(self):
        with pytest.raises(ValidationFailed):
            calculate_refund_amount(cancelled_before_pickup(), refund_amount=300)

    def test_partial_refund_on_completed_booking(self):
        result = calculate_refund_amount(closed_booking(), refund_amount=500)
        assert result == {"refund_amount": Decimal("500.00"), "refund_type": "Partial", "total_paid": Decimal("2000.00")}

    def test_partial_refund_needs_amount(self):
        with pytest.raises(ValidationFailed):
            calculate_refund_amount(closed_booking())

    def test_partial_refund_capped_by_damage(self):
        booking = closed_booking(damage_detected=True, damage_cost=Decimal("500"))
        with pytest.raises(ValidationFailed):
            calculate_refund_amount(booking, refund_amount=1600)

    def test_full_refund_after_pickup_not_allowed(self):
        with pytest.raises(RefundNotAllowed):
            calculate_refund_amount(closed_booking(), refund_type="FULL")

    def test_late_fee_above_advance_blocks_refund(self):
        booking = closed_booking(late_hours=6, late_fee=Decimal("750"))
        with pytest.raises(RefundNotAllowed):
            calculate_refund_amount(booking, refund_amount=100)

    def test_open_booking_not_refundable(self):
        with pytest.raises(RefundNotAllowed):
            calculate_refund_amount(closed_booking(booking_status=BookingStatus.CONFIRMED), refund_amount=100)

    def test_already_refunded(self):
        with pytest.raises(RefundNotAllowed):
            calculate_refund_amount(closed_booking(refund_status=RefundStatus.PROCESSED), refund_amount=100)

    def test_apply_partial_refund_drains_full_payment_first(self):
        booking = closed_booking()
        result = apply_refund_to_booking(booking, refund_amount=500, reason="Late handover")

        assert booking.full_payment_amount == Decimal("900.00")
        assert booking.advance_paid == Decimal("600.00")
        assert booking.payment_status == PaymentStatus.FULLY_PAID
        assert booking.refund_status == RefundStatus.PROCESSED
        assert booking.refund_reason == "Late handover"
        assert result["total_paid_after_refund"] == Decimal("1500.00")

    def test_apply_full_refund(self):
        booking = cancelled_before_pickup()
        result = apply_refund_to_booking(booking)

        assert result["refund_type"] == "Full"
        assert booking.advance_paid == Decimal("0")
        assert booking.payment_status == PaymentStatus.REFUNDED
        assert result["total_paid_after_refund"] == Decimal("0")
