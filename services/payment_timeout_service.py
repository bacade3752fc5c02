"""
Payment timeout sweep.

Runs periodically in the worker. Each pass:
1. backfills missing payment deadlines of PendingPayment bookings
2. cancels PendingPayment bookings with no advance past their deadline
3. deletes pending unpaid requests older than the request timeout
4. releases the vehicles those held
5. brings Active/Overdue bookings' stage and late fees up to date

Every write is conditional on the state it expects, so two passes in a row
(or two workers) cancel each booking and release each vehicle once.
"""
import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from database.base import async_session_factory, init_db
from database.models.booking import Booking, BookingStatus
from database.models.notification import NotificationEventType
from database.models.rental import PaymentStatus
from database.models.request import RentalRequest, RequestStatus
from services.clock import SystemClock, as_utc
from services.fleet_service import release_many_if_unblocked
from services.notification_service import queue_event
from services.rental_stage import LIVE_STAGES, sync_rental_stages
from services.settlement_math import ZERO, resolve_advance_paid
from services.sweep_guard import InMemorySweepGuard


PAYMENT_TIMEOUT_REASON = "Payment timeout"


@dataclass
class SweepResult:
    ran: bool = False
    cancelled_count: int = 0
    expired_request_count: int = 0
    deadline_backfilled_count: int = 0
    released_vehicle_count: int = 0
    stage_updated_count: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def resolve_payment_deadline(booking, timeout_seconds: Optional[int] = None) -> Optional[datetime]:
    """Stored deadline, else creation time + payment timeout"""
    deadline = as_utc(booking.payment_deadline)
    if deadline is not None:
        return deadline

    created_at = as_utc(booking.created_at)
    if created_at is None:
        return None

    seconds = settings.payment_timeout_seconds if timeout_seconds is None else timeout_seconds
    return created_at + timedelta(seconds=seconds)


def has_timed_out_payment(booking, now: datetime, timeout_seconds: Optional[int] = None) -> bool:
    if booking.booking_status != BookingStatus.PENDING_PAYMENT:
        return False
    if resolve_advance_paid(booking) > 0:
        return False

    deadline = resolve_payment_deadline(booking, timeout_seconds)
    if deadline is None:
        return False
    return as_utc(now) > deadline


class PaymentTimeoutSweeper:
    """Cancels unpaid reservations and frees their vehicles"""

    def __init__(self, session_factory=async_session_factory, guard=None, clock=None):
        self.session_factory = session_factory
        self.guard = guard or InMemorySweepGuard()
        self.clock = clock or SystemClock()

    async def run_sweep(self, now=None, min_interval_seconds: Optional[float] = None, force: bool = False) -> SweepResult:
        now = as_utc(now) or self.clock.now()
        interval = settings.sweep_interval_seconds if min_interval_seconds is None else min_interval_seconds

        if not force and not await self.guard.try_acquire(now, interval):
            logger.debug("Payment timeout sweep skipped (ran within interval)")
            return SweepResult(ran=False)

        result = SweepResult(ran=True)

        async with self.session_factory() as session:
            try:
                cancelled_vehicle_ids = await self._cancel_stale_bookings(session, now, result)
                expired_vehicle_ids = await self._expire_stale_requests(session, now, result)

                result.released_vehicle_count = await release_many_if_unblocked(
                    session, cancelled_vehicle_ids + expired_vehicle_ids
                )
                result.stage_updated_count = await self._sync_active_stages(session, now)

                await session.commit()
            except Exception:
                await session.rollback()
                raise

        if result.cancelled_count or result.expired_request_count or result.released_vehicle_count:
            logger.info(
                f"Sweep: cancelled {result.cancelled_count} booking(s), "
                f"expired {result.expired_request_count} request(s), "
                f"released {result.released_vehicle_count} vehicle(s)"
            )
        return result

    async def _cancel_stale_bookings(self, session: AsyncSession, now: datetime, result: SweepResult) -> List[int]:
        rows = await session.execute(
            select(Booking).where(Booking.booking_status == BookingStatus.PENDING_PAYMENT)
        )
        pending = list(rows.scalars().all())

        backfill = []
        stale_ids = []
        for booking in pending:
            try:
                if booking.payment_deadline is None:
                    deadline = resolve_payment_deadline(booking)
                    if deadline is not None:
                        backfill.append({"id": booking.id, "payment_deadline": deadline})

                if has_timed_out_payment(booking, now):
                    stale_ids.append(booking.id)
            except Exception as e:
                logger.error(f"Sweep could not evaluate booking {booking.id}: {e}")

        if backfill:
            # Bulk UPDATE by primary key
            await session.execute(update(Booking), backfill)
            result.deadline_backfilled_count = len(backfill)

        if not stale_ids:
            return []

        cancelled = await session.execute(
            update(Booking)
            .where(
                Booking.id.in_(stale_ids),
                Booking.booking_status == BookingStatus.PENDING_PAYMENT,
                Booking.advance_paid <= 0,
            )
            .values(
                booking_status=BookingStatus.CANCELLED,
                payment_status=PaymentStatus.UNPAID,
                rental_stage=None,
                remaining_amount=ZERO,
                cancellation_reason=PAYMENT_TIMEOUT_REASON,
                cancelled_at=now,
            )
            .returning(Booking.id, Booking.vehicle_id)
            .execution_options(synchronize_session=False)
        )
        cancelled_rows: List[Tuple[int, int]] = [(row[0], row[1]) for row in cancelled.all()]

        for booking_id, vehicle_id in cancelled_rows:
            await queue_event(
                session,
                NotificationEventType.BOOKING_AUTO_CANCELLED,
                booking_id=booking_id,
                payload={"reason": PAYMENT_TIMEOUT_REASON, "vehicle_id": vehicle_id},
            )
            logger.info(f"Booking {booking_id} auto-cancelled: {PAYMENT_TIMEOUT_REASON}")

        result.cancelled_count = len(cancelled_rows)
        return [vehicle_id for _, vehicle_id in cancelled_rows]

    async def _expire_stale_requests(self, session: AsyncSession, now: datetime, result: SweepResult) -> List[int]:
        timeout_minutes = settings.request_timeout_minutes
        if timeout_minutes <= 0:
            return []

        cutoff = now - timedelta(minutes=timeout_minutes)
        rows = await session.execute(
            select(RentalRequest).where(
                RentalRequest.status == RequestStatus.PENDING,
                RentalRequest.payment_status == PaymentStatus.UNPAID,
            )
        )

        expired_ids = []
        for request in rows.scalars().all():
            try:
                created_at = as_utc(request.created_at)
                if created_at is not None and created_at < cutoff and resolve_advance_paid(request) <= 0:
                    expired_ids.append(request.id)
            except Exception as e:
                logger.error(f"Sweep could not evaluate request {request.id}: {e}")

        if not expired_ids:
            return []

        deleted = await session.execute(
            delete(RentalRequest)
            .where(
                RentalRequest.id.in_(expired_ids),
                RentalRequest.status == RequestStatus.PENDING,
            )
            .returning(RentalRequest.id, RentalRequest.vehicle_id)
            .execution_options(synchronize_session=False)
        )
        deleted_rows = deleted.all()
        for request_id, _ in deleted_rows:
            logger.info(f"Request {request_id} expired unpaid")

        result.expired_request_count = len(deleted_rows)
        return [row[1] for row in deleted_rows]

    async def _sync_active_stages(self, session: AsyncSession, now: datetime) -> int:
        rows = await session.execute(
            select(Booking).where(
                Booking.booking_status == BookingStatus.CONFIRMED,
                Booking.rental_stage.in_(LIVE_STAGES),
            )
        )
        return await sync_rental_stages(session, list(rows.scalars().all()), now)


async def run_periodic_sweep(sweeper: PaymentTimeoutSweeper, interval_seconds: Optional[int] = None):
    """
    Worker loop. Errors are logged and the loop keeps going.

    Args:
        sweeper: configured PaymentTimeoutSweeper
        interval_seconds: pause between passes (default from settings)
    """
    interval = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
    logger.info(f"Payment timeout sweeper started (interval: {interval}s)")

    while True:
        try:
            await sweeper.run_sweep(min_interval_seconds=interval)
        except Exception as e:
            logger.exception(f"Payment timeout sweep failed: {e}")

        await asyncio.sleep(interval)


async def manual_sweep():
    """One forced pass, for operators: python -m services.payment_timeout_service"""
    await init_db()

    sweeper = PaymentTimeoutSweeper()
    result = await sweeper.run_sweep(force=True)

    print(f"\n✅ Manual sweep completed:")
    print(f"   Cancelled bookings: {result.cancelled_count}")
    print(f"   Expired requests: {result.expired_request_count}")
    print(f"   Deadlines backfilled: {result.deadline_backfilled_count}")
    print(f"   Vehicles released: {result.released_vehicle_count}")
    print(f"   Stages updated: {result.stage_updated_count}")
    return result


if __name__ == "__main__":
    asyncio.run(manual_sweep())
