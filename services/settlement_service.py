"""
Final settlement at trip completion, and refunds.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from database.base import async_session_factory
from database.models.booking import Booking, BookingStatus, RentalStage, RefundStatus
from database.models.rental import PaymentMethod, PaymentStatus
from database.models.vehicle import Vehicle
from database.models.notification import NotificationEventType
from services.clock import as_utc, utcnow
from services.exceptions import InvalidPaymentMethod, NotFound, RefundNotAllowed, ReturnInspectionMissing, WrongState
from services.fleet_service import release_vehicle_if_unblocked
from services.notification_service import queue_event
from services.rental_stage import sync_rental_stages
from services.settlement_math import apply_refund_to_booking, calculate_full_payment_amount, ZERO


ALLOWED_PAYMENT_METHODS = (
    PaymentMethod.CARD,
    PaymentMethod.UPI,
    PaymentMethod.NETBANKING,
    PaymentMethod.CASH,
)


def parse_payment_method(value, required: bool = True) -> Optional[PaymentMethod]:
    """CARD, UPI, NETBANKING or CASH. Empty/NONE is None when not required."""
    if isinstance(value, PaymentMethod):
        method = value
    else:
        raw = str(value or "").strip().upper()
        if not raw or raw == PaymentMethod.NONE.value:
            method = PaymentMethod.NONE
        else:
            try:
                method = PaymentMethod(raw)
            except ValueError:
                raise InvalidPaymentMethod("paymentMethod must be CARD, UPI, NETBANKING, or CASH")

    if method == PaymentMethod.NONE:
        if required:
            raise InvalidPaymentMethod("paymentMethod must be CARD, UPI, NETBANKING, or CASH")
        return None
    return method


def ensure_settlement_allowed(booking: Booking) -> None:
    if booking.booking_status == BookingStatus.COMPLETED or booking.rental_stage == RentalStage.COMPLETED:
        raise WrongState("Booking is already completed")

    if booking.booking_status != BookingStatus.CONFIRMED:
        raise WrongState("Only confirmed bookings can be completed")

    if not booking.has_locked_return_inspection:
        raise ReturnInspectionMissing("Return inspection must be submitted before completion")


async def finalize_booking_settlement(
    session: AsyncSession,
    booking: Booking,
    payment_method="CASH",
    now: Optional[datetime] = None,
) -> Decimal:
    """
    Collect what is left and close the booking inside the caller's
    transaction. Returns the collected amount.
    """
    ensure_settlement_allowed(booking)
    method = parse_payment_method(payment_method)
    now = as_utc(now) or utcnow()

    # Late fee up to the moment of return
    await sync_rental_stages(session, [booking], now)

    collected = calculate_full_payment_amount(booking)

    booking.full_payment_amount = collected
    booking.full_payment_method = method
    booking.full_payment_received_at = now
    booking.actual_return_at = now
    booking.rental_stage = RentalStage.COMPLETED
    booking.booking_status = BookingStatus.COMPLETED
    booking.payment_status = PaymentStatus.FULLY_PAID
    booking.remaining_amount = ZERO
    await session.flush()

    vehicle_values: Dict[str, Any] = {"total_trips_completed": Vehicle.total_trips_completed + 1}
    if booking.return_mileage is not None and booking.return_mileage >= 0:
        vehicle_values["current_mileage"] = booking.return_mileage
    await session.execute(
        update(Vehicle)
        .where(Vehicle.id == booking.vehicle_id)
        .values(**vehicle_values)
        .execution_options(synchronize_session=False)
    )

    await release_vehicle_if_unblocked(session, booking.vehicle_id)

    await queue_event(
        session,
        NotificationEventType.BOOKING_COMPLETED,
        booking_id=booking.id,
        payload={"collected_amount": str(collected), "payment_method": method.value},
    )

    logger.info(f"Booking {booking.id} completed, collected {collected} via {method.value}")
    return collected


class SettlementService:
    """Refund decisions on closed bookings"""

    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def process_refund(
        self,
        booking_id: int,
        refund_amount=None,
        refund_type: Optional[str] = None,
        reason: str = "",
        now=None,
    ) -> Dict[str, Any]:
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            try:
                booking = await session.get(Booking, booking_id, with_for_update=True)
                if booking is None:
                    raise NotFound(f"Booking {booking_id} not found")

                result = apply_refund_to_booking(booking, refund_amount, refund_type, reason, now)

                await queue_event(
                    session,
                    NotificationEventType.REFUND_PROCESSED,
                    booking_id=booking.id,
                    payload={
                        "refund_amount": str(result["refund_amount"]),
                        "refund_type": result["refund_type"],
                    },
                )
                await session.commit()

                logger.info(
                    f"Refund {result['refund_type']} of {result['refund_amount']} processed for booking {booking_id}"
                )
                result["booking"] = booking
                return result
            except Exception:
                await session.rollback()
                raise

    async def reject_refund(self, booking_id: int, reason: str = "", now=None) -> Booking:
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            try:
                booking = await session.get(Booking, booking_id, with_for_update=True)
                if booking is None:
                    raise NotFound(f"Booking {booking_id} not found")

                if booking.refund_status == RefundStatus.PROCESSED:
                    raise RefundNotAllowed("Refund is already processed for this booking")

                booking.refund_status = RefundStatus.REJECTED
                booking.refund_amount = ZERO
                booking.refund_reason = str(reason or "").strip()
                booking.refund_processed_at = now

                await session.commit()
                logger.info(f"Refund rejected for booking {booking_id}")
                return booking
            except Exception:
                await session.rollback()
                raise
