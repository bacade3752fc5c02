"""
Rental stage of a confirmed booking and late fee accrual.

Scheduled -> Active happens at pickup (reservation_service). Overdue is not a
command: evaluate_rental_stage() derives it from the clock, and
sync_rental_stages() writes the result back with guarded UPDATEs so that
concurrent recomputes can only move stage and fees forward.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from loguru import logger
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from config.settings import settings
from database.models.booking import Booking, BookingStatus, RentalStage, STAGE_ORDER
from database.models.rental import PaymentStatus
from services.clock import as_utc, utcnow
from services.settlement_math import (
    ZERO,
    calculate_hourly_late_rate,
    calculate_late_fee,
    calculate_late_hours,
    chargeable_damage_cost,
    overdue_threshold,
    resolve_advance_paid,
    resolve_final_amount,
    to_amount,
    to_decimal,
)


LIVE_STAGES = (RentalStage.ACTIVE, RentalStage.OVERDUE)


@dataclass(frozen=True)
class StageEvaluation:
    stage: Optional[RentalStage]
    hourly_late_rate: Decimal
    late_hours: int
    late_fee: Decimal
    remaining_amount: Decimal

    def differs_from(self, booking) -> bool:
        return (
            self.stage != booking.rental_stage
            or self.hourly_late_rate != to_amount(booking.hourly_late_rate)
            or self.late_hours != int(booking.late_hours or 0)
            or self.late_fee != to_amount(booking.late_fee)
            or self.remaining_amount != to_amount(booking.remaining_amount)
        )


def allowed_predecessors(stage: RentalStage) -> Tuple[RentalStage, ...]:
    """Stages a booking may be in before moving to (or staying in) stage"""
    rank = STAGE_ORDER[stage]
    return tuple(s for s, order in STAGE_ORDER.items() if order <= rank)


def resolve_hourly_late_rate(booking, multiplier=None) -> Decimal:
    """Stored rate wins; otherwise derive it from the locked per-day price"""
    stored = to_amount(booking.hourly_late_rate)
    if stored > 0:
        return stored

    per_day = to_amount(booking.locked_per_day_price)
    if per_day <= 0:
        per_day = to_amount(booking.base_per_day_price)
    factor = settings.late_rate_multiplier if multiplier is None else multiplier
    return calculate_hourly_late_rate(per_day, to_decimal(factor))


def calculate_remaining_amount(booking, late_fee=None) -> Decimal:
    """Still due at return: unpaid price + late fee + chargeable damage"""
    if booking.payment_status == PaymentStatus.FULLY_PAID:
        return ZERO

    fee = to_amount(booking.late_fee if late_fee is None else late_fee)
    due = max(resolve_final_amount(booking) - resolve_advance_paid(booking), ZERO)
    return to_amount(due + fee + chargeable_damage_cost(booking))


def evaluate_rental_stage(booking, now: Optional[datetime] = None, multiplier=None) -> StageEvaluation:
    """
    What the booking's stage and late fee should be at `now`.

    Pure: reads the booking, never writes. Only Active/Overdue bookings of a
    confirmed booking move; everything else reports its stored values.
    """
    now = as_utc(now) or utcnow()
    stored_stage = booking.rental_stage
    stored_rate = to_amount(booking.hourly_late_rate)
    stored_hours = int(booking.late_hours or 0)
    stored_fee = to_amount(booking.late_fee)

    if booking.booking_status != BookingStatus.CONFIRMED or stored_stage not in LIVE_STAGES:
        return StageEvaluation(
            stage=stored_stage,
            hourly_late_rate=stored_rate,
            late_hours=stored_hours,
            late_fee=stored_fee,
            remaining_amount=(
                to_amount(booking.remaining_amount)
                if stored_stage == RentalStage.COMPLETED or booking.booking_status != BookingStatus.CONFIRMED
                else calculate_remaining_amount(booking, stored_fee)
            ),
        )

    threshold = overdue_threshold(booking.drop_at, booking.grace_period_hours)
    is_overdue = stored_stage == RentalStage.OVERDUE or (threshold is not None and now > threshold)

    if not is_overdue:
        return StageEvaluation(
            stage=stored_stage,
            hourly_late_rate=stored_rate,
            late_hours=stored_hours,
            late_fee=stored_fee,
            remaining_amount=calculate_remaining_amount(booking, stored_fee),
        )

    rate = resolve_hourly_late_rate(booking, multiplier)
    late_hours = max(calculate_late_hours(booking.drop_at, booking.grace_period_hours, now), stored_hours)
    late_fee = max(calculate_late_fee(late_hours, rate), stored_fee)

    return StageEvaluation(
        stage=RentalStage.OVERDUE,
        hourly_late_rate=rate,
        late_hours=late_hours,
        late_fee=late_fee,
        remaining_amount=calculate_remaining_amount(booking, late_fee),
    )


async def persist_evaluation(session: AsyncSession, booking: Booking, evaluation: StageEvaluation) -> bool:
    """Forward-only write; False when another writer already got further"""
    result = await session.execute(
        update(Booking)
        .where(
            Booking.id == booking.id,
            Booking.booking_status == BookingStatus.CONFIRMED,
            Booking.rental_stage.in_(allowed_predecessors(evaluation.stage)),
            Booking.late_hours <= evaluation.late_hours,
            Booking.late_fee <= evaluation.late_fee,
            # remaining includes damage only once the return inspection is locked
            Booking.return_inspection_locked.is_(bool(booking.return_inspection_locked)),
        )
        .values(
            rental_stage=evaluation.stage,
            hourly_late_rate=evaluation.hourly_late_rate,
            late_hours=evaluation.late_hours,
            late_fee=evaluation.late_fee,
            remaining_amount=evaluation.remaining_amount,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    # Reflect the write on the loaded object without marking it dirty
    set_committed_value(booking, "rental_stage", evaluation.stage)
    set_committed_value(booking, "hourly_late_rate", evaluation.hourly_late_rate)
    set_committed_value(booking, "late_hours", evaluation.late_hours)
    set_committed_value(booking, "late_fee", evaluation.late_fee)
    set_committed_value(booking, "remaining_amount", evaluation.remaining_amount)
    return True


async def sync_rental_stages(
    session: AsyncSession,
    bookings: Iterable[Booking],
    now: Optional[datetime] = None,
) -> int:
    """
    Recompute stage and late fee for each booking. Returns how many were
    written. A failure on one booking is logged and the rest go on.
    """
    now = as_utc(now) or utcnow()
    updated = 0

    for booking in bookings:
        if booking.booking_status != BookingStatus.CONFIRMED or booking.rental_stage not in LIVE_STAGES:
            continue

        try:
            evaluation = evaluate_rental_stage(booking, now)
            if not evaluation.differs_from(booking):
                continue

            async with session.begin_nested():
                written = await persist_evaluation(session, booking, evaluation)

            if written:
                updated += 1
                if evaluation.stage == RentalStage.OVERDUE:
                    logger.info(
                        f"Booking {booking.id} overdue: {evaluation.late_hours}h, late fee {evaluation.late_fee}"
                    )
        except Exception as e:
            logger.error(f"Stage sync failed for booking {booking.id}: {e}")

    return updated
