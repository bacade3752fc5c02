from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import fetch
from database.models import Booking, PaymentMethod, PaymentStatus, RefundStatus
from services.exceptions import InvalidPaymentMethod, NotFound, RefundNotAllowed, ValidationFailed
from services.notification_service import NotificationService
from services.settlement_service import SettlementService, parse_payment_method


@pytest.fixture
def settlements(session_factory):
    return SettlementService(session_factory=session_factory)


async def paid_booking(reservations, client, vehicle, window, now):
    request = await reservations.create_request(client.id, vehicle.id, *window, now=now)
    return await reservations.pay_advance_or_approve(request.id, "UPI", now=now)


async def completed_booking(reservations, client, vehicle, window, now):
    booking = await paid_booking(reservations, client, vehicle, window, now)
    await reservations.start_pickup(booking.id, "Clean", [], now=window[0])
    await reservations.submit_return_inspection(booking.id, "Clean", damage_detected=False, now=window[1])
    return await reservations.complete_booking(booking.id, "CASH", now=window[1])


class TestParsePaymentMethod:
    def test_accepted_values(self):
        assert parse_payment_method(" card ") == PaymentMethod.CARD
        assert parse_payment_method(PaymentMethod.CASH) == PaymentMethod.CASH

    def test_optional_method(self):
        assert parse_payment_method(None, required=False) is None
        assert parse_payment_method("none", required=False) is None

    def test_required_method(self):
        with pytest.raises(InvalidPaymentMethod):
            parse_payment_method("")
        with pytest.raises(InvalidPaymentMethod):
            parse_payment_method("PAYPAL", required=False)


async def test_partial_refund_after_completion(session_factory, settlements, reservations, client, vehicle, window, now):
    booking = await completed_booking(reservations, client, vehicle, window, now)

    result = await settlements.process_refund(booking.id, refund_amount="500", reason="AC not working", now=window[1])

    assert result["refund_type"] == "Partial"
    assert result["refund_amount"] == Decimal("500.00")
    assert result["total_paid_before_refund"] == Decimal("2000.00")
    assert result["total_paid_after_refund"] == Decimal("1500.00")

    stored = await fetch(session_factory, Booking, booking.id)
    assert stored.refund_status == RefundStatus.PROCESSED
    assert stored.full_payment_amount == Decimal("900.00")
    assert stored.advance_paid == Decimal("600.00")
    assert stored.payment_status == PaymentStatus.FULLY_PAID

    with pytest.raises(RefundNotAllowed):
        await settlements.process_refund(booking.id, refund_amount="100", now=window[1])


async def test_refund_above_paid_amount(settlements, reservations, client, vehicle, window, now):
    booking = await completed_booking(reservations, client, vehicle, window, now)

    with pytest.raises(ValidationFailed):
        await settlements.process_refund(booking.id, refund_amount="2500", now=window[1])
    with pytest.raises(RefundNotAllowed):
        await settlements.process_refund(booking.id, refund_type="FULL", now=window[1])


async def test_full_refund_after_early_cancellation(session_factory, settlements, reservations, client, vehicle, window, now):
    booking = await paid_booking(reservations, client, vehicle, window, now)
    await reservations.cancel_booking(booking.id, "Plans changed", now=now + timedelta(minutes=20))

    with pytest.raises(ValidationFailed):
        await settlements.process_refund(booking.id, refund_amount="100", now=now + timedelta(minutes=30))

    result = await settlements.process_refund(booking.id, refund_type="FULL", now=now + timedelta(minutes=30))

    assert result["refund_type"] == "Full"
    assert result["refund_amount"] == Decimal("600.00")
    assert result["booking"].payment_status == PaymentStatus.REFUNDED

    stored = await fetch(session_factory, Booking, booking.id)
    assert stored.advance_paid == Decimal("0.00")
    assert stored.refund_amount == Decimal("600.00")

    events = await NotificationService(session_factory=session_factory).list_events_for_booking(booking.id)
    assert events[-1].event_type == "refund_processed"
    assert events[-1].payload == {"refund_amount": "600.00", "refund_type": "Full"}


async def test_no_refund_for_live_booking(settlements, reservations, client, vehicle, window, now):
    booking = await paid_booking(reservations, client, vehicle, window, now)
    with pytest.raises(RefundNotAllowed):
        await settlements.process_refund(booking.id, refund_amount="100", now=now)


async def test_reject_refund(session_factory, settlements, reservations, client, vehicle, window, now):
    booking = await completed_booking(reservations, client, vehicle, window, now)

    rejected = await settlements.reject_refund(booking.id, "Outside policy", now=window[1])

    assert rejected.refund_status == RefundStatus.REJECTED
    assert rejected.refund_reason == "Outside policy"
    stored = await fetch(session_factory, Booking, booking.id)
    assert stored.refund_status == RefundStatus.REJECTED


async def test_reject_after_processed(settlements, reservations, client, vehicle, window, now):
    booking = await completed_booking(reservations, client, vehicle, window, now)
    await settlements.process_refund(booking.id, refund_amount="200", now=window[1])

    with pytest.raises(RefundNotAllowed):
        await settlements.reject_refund(booking.id, "Too late", now=window[1])


async def test_refund_missing_booking(settlements):
    with pytest.raises(NotFound):
        await settlements.process_refund(404, refund_amount="10")
