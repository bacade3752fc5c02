"""
Reservation orchestrator.

Composes billing, the fleet machine, the bargain machine and the rental stage
machine into the request -> booking -> pickup -> return -> completion flow.
Each public operation is one transaction: it either fully applies or raises
and leaves nothing behind.
"""
from datetime import timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from database.base import async_session_factory
from database.models.user import User
from database.models.vehicle import FleetStatus
from database.models.rental import PaymentMethod, PaymentStatus
from database.models.request import RentalRequest, RequestStatus
from database.models.booking import Booking, BookingStatus, RentalStage
from database.models.notification import NotificationEventType
from services import bargain_service
from services.billing import calculate_rental_amount, validate_rental_window
from services.clock import as_utc, utcnow
from services.exceptions import (
    AlreadyInspected,
    AlreadyLocked,
    DuplicatePendingRequest,
    InvalidWindow,
    NotFound,
    ValidationFailed,
    VehicleUnavailable,
    WrongState,
)
from services.fleet_service import (
    ensure_reserved,
    get_vehicle,
    mark_rented,
    release_vehicle_if_unblocked,
    try_reserve_vehicle,
)
from services.maintenance_service import sync_fleet_status_from_maintenance
from services.notification_service import queue_event
from services.payment_timeout_service import resolve_payment_deadline
from services.pricing import resolve_price_per_day
from services.rental_stage import (
    LIVE_STAGES,
    calculate_remaining_amount,
    resolve_hourly_late_rate,
    sync_rental_stages,
)
from services.settlement_math import (
    ZERO,
    calculate_advance_breakdown,
    chargeable_damage_cost,
    clamp_percentage,
    normalize_grace_period_hours,
    resolve_final_amount,
    to_amount,
    to_decimal,
)
from services.settlement_service import finalize_booking_settlement, parse_payment_method


COPIED_REQUEST_FIELDS = (
    "requester_id",
    "vehicle_id",
    "pickup_at",
    "drop_at",
    "grace_period_hours",
    "billable_days",
    "base_per_day_price",
    "locked_per_day_price",
    "price_source",
    "total_amount",
    "bargain_status",
    "bargain_user_price",
    "bargain_admin_counter_price",
    "bargain_user_attempts",
)


def _normalize_images(images) -> List[str]:
    if not images:
        return []
    if isinstance(images, str):
        images = [images]
    return [str(image).strip() for image in images if str(image or "").strip()]


def _normalize_mileage(mileage) -> Optional[int]:
    if mileage is None or mileage == "":
        return None
    value = to_decimal(mileage, None)
    if value is None or value < 0:
        raise ValidationFailed("Mileage must be a non-negative number")
    return int(value)


async def _get_booking(session: AsyncSession, booking_id: int) -> Booking:
    result = await session.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return booking


class ReservationService:
    """Request/booking lifecycle"""

    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def create_request(
        self,
        requester_id: int,
        vehicle_id: int,
        pickup_at,
        drop_at,
        grace_period_hours=None,
        bargain_price=None,
        now=None,
    ) -> RentalRequest:
        """
        Price the window and hold the vehicle for a new rental request.

        The vehicle is reserved with one conditional UPDATE, so when several
        requests race for the same vehicle exactly one of them wins and the
        others get VehicleUnavailable.
        """
        now = as_utc(now) or utcnow()

        error = validate_rental_window(
            pickup_at,
            drop_at,
            now=now,
            min_duration_hours=settings.min_rental_duration_hours,
            past_tolerance_minutes=settings.pickup_past_tolerance_minutes,
        )
        if error:
            raise InvalidWindow(error)

        pickup = as_utc(pickup_at)
        drop = as_utc(drop_at)
        grace = normalize_grace_period_hours(grace_period_hours, settings.default_grace_period_hours)

        has_bargain = bargain_price is not None and bargain_price != ""
        if has_bargain:
            offered = to_decimal(bargain_price, None)
            if offered is None or offered <= 0:
                raise ValidationFailed("Invalid bargain price")

        async with self.session_factory() as session:
            try:
                requester = await session.get(User, requester_id)
                if requester is None:
                    raise NotFound(f"User {requester_id} not found")

                vehicle = await get_vehicle(session, vehicle_id)
                if vehicle is None:
                    raise NotFound(f"Vehicle {vehicle_id} not found")

                if await sync_fleet_status_from_maintenance(session, vehicle_id, now):
                    vehicle = await get_vehicle(session, vehicle_id)

                duplicate = await session.execute(
                    select(RentalRequest.id).where(
                        RentalRequest.requester_id == requester_id,
                        RentalRequest.vehicle_id == vehicle_id,
                        RentalRequest.status == RequestStatus.PENDING,
                    ).limit(1)
                )
                if duplicate.first() is not None:
                    raise DuplicatePendingRequest("You already have a pending request for this vehicle")

                if vehicle.fleet_status != FleetStatus.AVAILABLE:
                    raise VehicleUnavailable(f"Vehicle is {vehicle.fleet_status.value}")

                per_day, source = resolve_price_per_day(vehicle)
                if per_day <= 0:
                    raise ValidationFailed("Vehicle has no price configured")

                days, amount = calculate_rental_amount(pickup, drop, per_day)
                breakdown = calculate_advance_breakdown(amount)

                if not await try_reserve_vehicle(session, vehicle_id):
                    raise VehicleUnavailable("Vehicle is no longer available")

                request = RentalRequest(
                    requester_id=requester_id,
                    vehicle_id=vehicle_id,
                    status=RequestStatus.PENDING,
                    pickup_at=pickup,
                    drop_at=drop,
                    grace_period_hours=grace,
                    billable_days=days,
                    base_per_day_price=to_amount(vehicle.price_per_day),
                    locked_per_day_price=per_day,
                    price_source=source,
                    total_amount=breakdown.final_amount,
                    final_amount=breakdown.final_amount,
                    advance_rate=breakdown.advance_rate,
                    advance_required=breakdown.advance_required,
                    advance_paid=ZERO,
                    remaining_amount=breakdown.remaining_amount,
                    payment_status=PaymentStatus.UNPAID,
                    payment_method=PaymentMethod.NONE,
                    created_at=now,
                )
                if has_bargain:
                    bargain_service.offer(request, bargain_price)

                session.add(request)
                await session.flush()

                await queue_event(
                    session,
                    NotificationEventType.REQUEST_CREATED,
                    request_id=request.id,
                    payload={
                        "vehicle_id": vehicle_id,
                        "final_amount": str(request.final_amount),
                        "advance_required": str(request.advance_required),
                    },
                )

                await session.commit()
                logger.info(
                    f"Request {request.id} created for vehicle {vehicle_id}: "
                    f"{days} day(s), {breakdown.final_amount} ({source.value} price)"
                )
                return request
            except Exception:
                await session.rollback()
                raise

    async def pay_advance_or_approve(self, request_id: int, payment_method=None, now=None) -> Booking:
        """
        Turn a pending request into a booking.

        With a payment method the advance is captured and the booking is
        confirmed right away. Without one (admin approval) the booking waits
        in PendingPayment until the payment deadline; the timeout sweeper
        cancels it after that. The vehicle stays Reserved either way.
        """
        now = as_utc(now) or utcnow()
        method = parse_payment_method(payment_method, required=False)

        async with self.session_factory() as session:
            try:
                request = await session.get(RentalRequest, request_id, with_for_update=True)
                if request is None:
                    raise NotFound(f"Request {request_id} not found")

                if request.status != RequestStatus.PENDING:
                    raise WrongState(f"Request is {request.status.value}, expected pending")

                if not await ensure_reserved(session, request.vehicle_id, request.id):
                    raise VehicleUnavailable("Vehicle is no longer reserved for this request")

                breakdown = calculate_advance_breakdown(resolve_final_amount(request))
                captured = method is not None or breakdown.advance_required <= 0

                booking = Booking(**{field: getattr(request, field) for field in COPIED_REQUEST_FIELDS})
                booking.final_amount = breakdown.final_amount
                booking.advance_rate = breakdown.advance_rate
                booking.advance_required = breakdown.advance_required
                booking.created_at = now
                bargain_service.lock(booking)

                if captured:
                    booking.booking_status = BookingStatus.CONFIRMED
                    booking.rental_stage = RentalStage.SCHEDULED
                    booking.advance_paid = breakdown.advance_required
                    booking.payment_status = (
                        PaymentStatus.PARTIALLY_PAID if breakdown.advance_required > 0 else PaymentStatus.UNPAID
                    )
                    booking.payment_method = method or PaymentMethod.NONE
                    booking.advance_paid_at = now if breakdown.advance_required > 0 else None
                else:
                    booking.booking_status = BookingStatus.PENDING_PAYMENT
                    booking.rental_stage = None
                    booking.advance_paid = ZERO
                    booking.payment_status = PaymentStatus.UNPAID
                    booking.payment_method = PaymentMethod.NONE
                    booking.payment_deadline = now + timedelta(seconds=settings.payment_timeout_seconds)

                booking.remaining_amount = calculate_remaining_amount(booking, ZERO)

                session.add(booking)
                await session.flush()
                await session.delete(request)

                await queue_event(
                    session,
                    NotificationEventType.ADVANCE_PAID if captured else NotificationEventType.BOOKING_AWAITING_PAYMENT,
                    booking_id=booking.id,
                    request_id=request_id,
                    payload={
                        "advance_paid": str(booking.advance_paid),
                        "remaining_amount": str(booking.remaining_amount),
                        "payment_deadline": booking.payment_deadline,
                    },
                )

                await session.commit()
                logger.info(
                    f"Request {request_id} converted to booking {booking.id} ({booking.booking_status.value})"
                )
                return booking
            except Exception:
                await session.rollback()
                raise

    async def capture_booking_advance(self, booking_id: int, payment_method, now=None) -> Booking:
        """Confirm a PendingPayment booking before its payment deadline"""
        now = as_utc(now) or utcnow()
        method = parse_payment_method(payment_method)

        async with self.session_factory() as session:
            try:
                booking = await _get_booking(session, booking_id)
                if booking.booking_status != BookingStatus.PENDING_PAYMENT:
                    raise WrongState(f"Booking is {booking.booking_status.value}, expected PendingPayment")

                deadline = resolve_payment_deadline(booking)
                if deadline is not None and now > deadline:
                    raise WrongState("Payment window has expired")

                advance = to_amount(booking.advance_required)
                payment_status = PaymentStatus.PARTIALLY_PAID if advance > 0 else PaymentStatus.UNPAID
                remaining = to_amount(max(resolve_final_amount(booking) - advance, ZERO))

                # Guarded on status so a concurrent sweep cancellation wins or loses cleanly
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.booking_status == BookingStatus.PENDING_PAYMENT,
                    )
                    .values(
                        booking_status=BookingStatus.CONFIRMED,
                        rental_stage=RentalStage.SCHEDULED,
                        advance_paid=advance,
                        payment_status=payment_status,
                        payment_method=method,
                        advance_paid_at=now,
                        remaining_amount=remaining,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Advance capture lost to a concurrent change on booking {booking_id}")
                    raise WrongState("Booking is no longer awaiting payment")

                await queue_event(
                    session,
                    NotificationEventType.ADVANCE_PAID,
                    booking_id=booking_id,
                    payload={"advance_paid": str(advance), "remaining_amount": str(remaining)},
                )
                await session.commit()

                booking = await _get_booking(session, booking_id)
                logger.info(f"Advance captured for booking {booking_id} via {method.value}")
                return booking
            except Exception:
                await session.rollback()
                raise

    async def start_pickup(self, booking_id: int, inspection_notes: str, images=None, mileage=None, now=None) -> Booking:
        """Pickup handover: stage Active, late rate frozen, vehicle Rented"""
        now = as_utc(now) or utcnow()
        notes = str(inspection_notes or "").strip()
        if not notes:
            raise ValidationFailed("Pickup inspection notes are required")
        pickup_images = _normalize_images(images)
        pickup_mileage = _normalize_mileage(mileage)

        async with self.session_factory() as session:
            try:
                booking = await _get_booking(session, booking_id)

                if booking.pickup_inspected_at is not None:
                    raise AlreadyInspected("Pickup inspection is already recorded")

                if booking.booking_status != BookingStatus.CONFIRMED or booking.rental_stage != RentalStage.SCHEDULED:
                    raise WrongState("Pickup is allowed only for confirmed, scheduled bookings")

                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.booking_status == BookingStatus.CONFIRMED,
                        Booking.rental_stage == RentalStage.SCHEDULED,
                        Booking.pickup_inspected_at.is_(None),
                    )
                    .values(
                        rental_stage=RentalStage.ACTIVE,
                        actual_pickup_at=now,
                        pickup_inspected_at=now,
                        pickup_notes=notes,
                        pickup_images=pickup_images,
                        pickup_mileage=pickup_mileage,
                        hourly_late_rate=resolve_hourly_late_rate(booking),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise AlreadyInspected("Pickup inspection is already recorded")

                await mark_rented(session, booking.vehicle_id)
                await session.commit()

                booking = await _get_booking(session, booking_id)
                logger.info(f"Booking {booking_id} picked up, late rate {booking.hourly_late_rate}/h")
                return booking
            except Exception:
                await session.rollback()
                raise

    async def submit_return_inspection(
        self,
        booking_id: int,
        notes: str,
        damage_detected: bool,
        damage_cost=None,
        images=None,
        damage_discount_percentage=0,
        mileage=None,
        now=None,
    ) -> Booking:
        """Lock the return inspection and add chargeable damage to what is due"""
        now = as_utc(now) or utcnow()
        return_notes = str(notes or "").strip()
        return_images = _normalize_images(images)
        return_mileage = _normalize_mileage(mileage)

        damage_detected = bool(damage_detected)
        cost = ZERO
        if damage_detected:
            parsed_cost = to_decimal(damage_cost, None)
            if parsed_cost is None or parsed_cost < 0:
                raise ValidationFailed("damage_cost must be a non-negative amount")
            cost = to_amount(parsed_cost)

        async with self.session_factory() as session:
            try:
                booking = await _get_booking(session, booking_id)

                if booking.has_locked_return_inspection:
                    raise AlreadyLocked("Return inspection is already locked")

                await sync_rental_stages(session, [booking], now)

                if booking.booking_status != BookingStatus.CONFIRMED or booking.rental_stage not in LIVE_STAGES:
                    raise WrongState("Return inspection requires an active or overdue rental")

                if booking.pickup_mileage is not None and return_mileage is not None \
                        and return_mileage < booking.pickup_mileage:
                    raise ValidationFailed("Return mileage cannot be lower than pickup mileage")

                damage = {
                    "damage_detected": damage_detected,
                    "damage_cost": cost,
                    "damage_discount_percentage": clamp_percentage(damage_discount_percentage),
                }
                remaining = to_amount(calculate_remaining_amount(booking) + chargeable_damage_cost(damage))

                # Late fee must still be the one remaining was computed from
                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.booking_status == BookingStatus.CONFIRMED,
                        Booking.rental_stage.in_(LIVE_STAGES),
                        Booking.return_inspection_locked.is_(False),
                        Booking.late_fee == booking.late_fee,
                    )
                    .values(
                        return_notes=return_notes,
                        return_images=return_images,
                        return_mileage=return_mileage,
                        return_inspected_at=now,
                        return_inspection_locked=True,
                        remaining_amount=remaining,
                        **damage,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Return inspection of booking {booking_id} lost to a concurrent change")
                    raise WrongState("Booking changed concurrently, reload and retry")

                await session.commit()

                booking = await _get_booking(session, booking_id)
                logger.info(
                    f"Return inspection locked for booking {booking_id} "
                    f"(damage={damage_detected}, remaining {booking.remaining_amount})"
                )
                return booking
            except Exception:
                await session.rollback()
                raise

    async def complete_booking(self, booking_id: int, payment_method="CASH", now=None) -> Booking:
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            try:
                booking = await _get_booking(session, booking_id)
                await finalize_booking_settlement(session, booking, payment_method, now)
                await session.commit()
                return booking
            except Exception:
                await session.rollback()
                raise

    async def reject_request(self, request_id: int) -> bool:
        """Admin rejection; the request is removed and its vehicle released"""
        return await self._remove_request(request_id, "rejected")

    async def delete_request(self, request_id: int) -> bool:
        return await self._remove_request(request_id, "deleted")

    async def _remove_request(self, request_id: int, action: str) -> bool:
        async with self.session_factory() as session:
            try:
                request = await session.get(RentalRequest, request_id)
                if request is None:
                    raise NotFound(f"Request {request_id} not found")

                vehicle_id = request.vehicle_id
                await session.delete(request)
                await session.flush()

                released = await release_vehicle_if_unblocked(session, vehicle_id)
                await session.commit()
                logger.info(f"Request {request_id} {action} (vehicle released: {released})")
                return released
            except Exception:
                await session.rollback()
                raise

    async def cancel_booking(self, booking_id: int, reason: str = "", now=None) -> Booking:
        """Cancel before pickup: PendingPayment, or Confirmed and still Scheduled"""
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            try:
                booking = await _get_booking(session, booking_id)

                cancellable = booking.booking_status == BookingStatus.PENDING_PAYMENT or (
                    booking.booking_status == BookingStatus.CONFIRMED
                    and booking.rental_stage == RentalStage.SCHEDULED
                )
                if not cancellable:
                    raise WrongState("Only bookings that have not been picked up can be cancelled")

                result = await session.execute(
                    update(Booking)
                    .where(
                        Booking.id == booking_id,
                        Booking.booking_status == booking.booking_status,
                        Booking.pickup_inspected_at.is_(None),
                    )
                    .values(
                        booking_status=BookingStatus.CANCELLED,
                        rental_stage=None,
                        remaining_amount=ZERO,
                        cancellation_reason=str(reason or "").strip() or "Cancelled",
                        cancelled_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(f"Cancellation of booking {booking_id} lost to a concurrent change")
                    raise WrongState("Booking changed concurrently, reload and retry")

                await release_vehicle_if_unblocked(session, booking.vehicle_id)
                await queue_event(
                    session,
                    NotificationEventType.BOOKING_CANCELLED,
                    booking_id=booking_id,
                    payload={"reason": reason},
                )
                await session.commit()

                booking = await _get_booking(session, booking_id)
                logger.info(f"Booking {booking_id} cancelled: {booking.cancellation_reason}")
                return booking
            except Exception:
                await session.rollback()
                raise

    async def list_bookings(self, requester_id: Optional[int] = None, now=None) -> List[Booking]:
        """Bookings, newest first, with stage and late fees brought up to date"""
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            query = select(Booking).order_by(Booking.id.desc())
            if requester_id is not None:
                query = query.where(Booking.requester_id == requester_id)

            result = await session.execute(query)
            bookings = list(result.scalars().all())

            if await sync_rental_stages(session, bookings, now):
                await session.commit()
            return bookings

    async def list_requests(self, requester_id: Optional[int] = None) -> List[RentalRequest]:
        async with self.session_factory() as session:
            query = select(RentalRequest).order_by(RentalRequest.id.desc())
            if requester_id is not None:
                query = query.where(RentalRequest.requester_id == requester_id)
            result = await session.execute(query)
            return list(result.scalars().all())
