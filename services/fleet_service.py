"""
Fleet status machine.

Every change of Vehicle.fleet_status goes through this module as a single
conditional UPDATE (compare-and-set on status and version), never as
read-then-write from memory.
"""
from typing import Dict, FrozenSet, Iterable, Optional

from loguru import logger
from sqlalchemy import select, update, exists, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database.base import async_session_factory
from database.models.vehicle import Vehicle, FleetStatus
from database.models.request import RentalRequest, RequestStatus
from database.models.booking import Booking, BookingStatus, RentalStage
from services.exceptions import FleetStateConflict, NotFound, ValidationFailed


# Targets an admin may set by hand, and the states they may come from
MANUAL_TRANSITIONS: Dict[FleetStatus, FrozenSet[FleetStatus]] = {
    FleetStatus.MAINTENANCE: frozenset({FleetStatus.AVAILABLE, FleetStatus.RESERVED, FleetStatus.INACTIVE}),
    FleetStatus.INACTIVE: frozenset({
        FleetStatus.AVAILABLE, FleetStatus.RESERVED, FleetStatus.RENTED, FleetStatus.MAINTENANCE,
    }),
    FleetStatus.AVAILABLE: frozenset({
        FleetStatus.MAINTENANCE, FleetStatus.INACTIVE, FleetStatus.RESERVED, FleetStatus.RENTED,
    }),
}

# Transitions driven by the reservation lifecycle
SYSTEM_TRANSITIONS: Dict[FleetStatus, FrozenSet[FleetStatus]] = {
    FleetStatus.RESERVED: frozenset({FleetStatus.AVAILABLE}),
    FleetStatus.RENTED: frozenset({FleetStatus.RESERVED}),
    FleetStatus.AVAILABLE: frozenset({FleetStatus.RESERVED, FleetStatus.RENTED, FleetStatus.MAINTENANCE}),
    FleetStatus.MAINTENANCE: frozenset({FleetStatus.AVAILABLE}),
}

# Only these are released automatically; Maintenance/Inactive stay put
RELEASABLE_STATUSES = (FleetStatus.RESERVED, FleetStatus.RENTED)

BLOCKING_BOOKING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.PENDING_PAYMENT)


def can_transition(current: FleetStatus, target: FleetStatus, manual: bool = False) -> bool:
    table = MANUAL_TRANSITIONS if manual else SYSTEM_TRANSITIONS
    return current in table.get(target, frozenset())


def blocking_request_clause(vehicle_id: int, exclude_request_id: Optional[int] = None):
    query = select(RentalRequest.id).where(
        RentalRequest.vehicle_id == vehicle_id,
        RentalRequest.status == RequestStatus.PENDING,
    )
    if exclude_request_id is not None:
        query = query.where(RentalRequest.id != exclude_request_id)
    return exists(query)


def blocking_booking_clause(vehicle_id: int, exclude_booking_id: Optional[int] = None):
    query = select(Booking.id).where(
        Booking.vehicle_id == vehicle_id,
        Booking.booking_status.in_(BLOCKING_BOOKING_STATUSES),
        or_(Booking.rental_stage.is_(None), Booking.rental_stage != RentalStage.COMPLETED),
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    return exists(query)


def unblocked_clause(vehicle_id: int, exclude_request_id=None, exclude_booking_id=None):
    return (
        ~blocking_request_clause(vehicle_id, exclude_request_id)
        & ~blocking_booking_clause(vehicle_id, exclude_booking_id)
    )


async def get_vehicle(session: AsyncSession, vehicle_id: int) -> Optional[Vehicle]:
    """Fresh copy, overwriting whatever the identity map holds"""
    result = await session.execute(
        select(Vehicle)
        .where(Vehicle.id == vehicle_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def has_blocking_reservation(
    session: AsyncSession,
    vehicle_id: int,
    exclude_request_id: Optional[int] = None,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """A pending request or a live booking (confirmed/pending payment, not completed)"""
    result = await session.execute(
        select(
            blocking_request_clause(vehicle_id, exclude_request_id)
            | blocking_booking_clause(vehicle_id, exclude_booking_id)
        )
    )
    return bool(result.scalar())


async def compare_and_set_status(
    session: AsyncSession,
    vehicle_id: int,
    expected: Iterable[FleetStatus],
    target: FleetStatus,
    expected_version: Optional[int] = None,
    require_unblocked: bool = False,
    exclude_request_id: Optional[int] = None,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """One conditional UPDATE. True when this call won the transition."""
    conditions = [Vehicle.id == vehicle_id, Vehicle.fleet_status.in_(tuple(expected))]
    if expected_version is not None:
        conditions.append(Vehicle.version == expected_version)
    if require_unblocked:
        conditions.append(unblocked_clause(vehicle_id, exclude_request_id, exclude_booking_id))

    result = await session.execute(
        update(Vehicle)
        .where(*conditions)
        .values(fleet_status=target, version=Vehicle.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def try_reserve_vehicle(session: AsyncSession, vehicle_id: int) -> bool:
    """Available -> Reserved, only if nothing else holds the vehicle"""
    reserved = await compare_and_set_status(
        session,
        vehicle_id,
        expected=(FleetStatus.AVAILABLE,),
        target=FleetStatus.RESERVED,
        require_unblocked=True,
    )
    if reserved:
        logger.info(f"Vehicle {vehicle_id} reserved")
    else:
        logger.warning(f"Vehicle {vehicle_id} could not be reserved")
    return reserved


async def ensure_reserved(session: AsyncSession, vehicle_id: int, request_id: int) -> bool:
    """
    The vehicle must still be held for this request: Reserved (or Available
    with nothing else blocking, which is re-reserved) and no other request or
    booking claiming it.
    """
    if await has_blocking_reservation(session, vehicle_id, exclude_request_id=request_id):
        return False

    vehicle = await get_vehicle(session, vehicle_id)
    if vehicle is None:
        return False
    if vehicle.fleet_status == FleetStatus.RESERVED:
        return True
    if vehicle.fleet_status == FleetStatus.AVAILABLE:
        return await compare_and_set_status(
            session,
            vehicle_id,
            expected=(FleetStatus.AVAILABLE,),
            target=FleetStatus.RESERVED,
            expected_version=vehicle.version,
        )
    return False


async def mark_rented(session: AsyncSession, vehicle_id: int) -> None:
    """Reserved -> Rented at pickup handover"""
    rented = await compare_and_set_status(
        session,
        vehicle_id,
        expected=(FleetStatus.RESERVED,),
        target=FleetStatus.RENTED,
    )
    if not rented:
        vehicle = await get_vehicle(session, vehicle_id)
        current = vehicle.fleet_status.value if vehicle else "missing"
        raise FleetStateConflict(f"Vehicle {vehicle_id} must be Reserved for pickup (current: {current})")
    logger.info(f"Vehicle {vehicle_id} handed over (Rented)")


async def release_vehicle_if_unblocked(session: AsyncSession, vehicle_id: Optional[int]) -> bool:
    """Reserved/Rented -> Available when no request or booking holds it"""
    if not vehicle_id:
        return False

    released = await compare_and_set_status(
        session,
        vehicle_id,
        expected=RELEASABLE_STATUSES,
        target=FleetStatus.AVAILABLE,
        require_unblocked=True,
    )
    if released:
        logger.info(f"Vehicle {vehicle_id} released to Available")
    return released


async def release_many_if_unblocked(session: AsyncSession, vehicle_ids: Iterable[Optional[int]]) -> int:
    unique_ids = sorted({vehicle_id for vehicle_id in vehicle_ids if vehicle_id})
    released_count = 0
    for vehicle_id in unique_ids:
        if await release_vehicle_if_unblocked(session, vehicle_id):
            released_count += 1
    return released_count


async def apply_manual_status(session: AsyncSession, vehicle_id: int, target: FleetStatus) -> Vehicle:
    """Admin transition inside the caller's transaction"""
    vehicle = await get_vehicle(session, vehicle_id)
    if vehicle is None:
        raise NotFound(f"Vehicle {vehicle_id} not found")

    current = vehicle.fleet_status
    if current == target:
        return vehicle

    if target in (FleetStatus.RESERVED, FleetStatus.RENTED):
        raise FleetStateConflict(f"{target.value} is set by the reservation lifecycle, not manually")

    if target == FleetStatus.MAINTENANCE and current == FleetStatus.RENTED:
        raise FleetStateConflict("Cannot move to Maintenance while vehicle is rented")

    if not can_transition(current, target, manual=True):
        raise FleetStateConflict(f"Illegal fleet transition {current.value} -> {target.value}")

    changed = await compare_and_set_status(
        session,
        vehicle_id,
        expected=(current,),
        target=target,
        expected_version=vehicle.version,
        require_unblocked=True,
    )
    if not changed:
        logger.warning(f"Manual status change of vehicle {vehicle_id} to {target.value} refused")
        if await has_blocking_reservation(session, vehicle_id):
            raise FleetStateConflict(
                f"Cannot move vehicle to {target.value} while a request or booking holds it"
            )
        raise FleetStateConflict(f"Vehicle {vehicle_id} changed concurrently, reload and retry")

    logger.info(f"Vehicle {vehicle_id}: {current.value} -> {target.value} (manual)")
    return await get_vehicle(session, vehicle_id)


def parse_fleet_status(value) -> FleetStatus:
    if isinstance(value, FleetStatus):
        return value
    try:
        return FleetStatus(str(value or "").strip())
    except ValueError:
        raise ValidationFailed(f"Unknown fleet status: {value}")


class FleetService:
    """Boundary operations on fleet status"""

    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def update_fleet_status(self, vehicle_id: int, target_status) -> Vehicle:
        target = parse_fleet_status(target_status)

        async with self.session_factory() as session:
            try:
                vehicle = await apply_manual_status(session, vehicle_id, target)
                await session.commit()
                return vehicle
            except Exception:
                await session.rollback()
                raise

    async def release_vehicle(self, vehicle_id: int) -> bool:
        async with self.session_factory() as session:
            released = await release_vehicle_if_unblocked(session, vehicle_id)
            await session.commit()
            return released
