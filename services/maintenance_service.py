"""
Vehicle maintenance records and their effect on fleet status.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.base import async_session_factory
from database.models.vehicle import FleetStatus
from database.models.maintenance import MaintenanceRecord, MaintenanceStatus, MaintenanceType
from services.clock import as_utc, utcnow
from services.exceptions import FleetStateConflict, NotFound, ValidationFailed, WrongState
from services.fleet_service import compare_and_set_status, get_vehicle, has_blocking_reservation
from services.settlement_math import to_amount


DUE_SOON_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class MaintenanceReminder:
    service_due_soon: bool
    service_overdue: bool
    nearest_service_due_date: Optional[datetime]


def build_maintenance_reminder_flags(records: Iterable, now: Optional[datetime] = None) -> MaintenanceReminder:
    """Due-soon (within 7 days) and overdue flags over open records"""
    now = as_utc(now) or utcnow()
    soon_threshold = now + DUE_SOON_WINDOW

    due_soon = False
    overdue = False
    nearest = None

    for record in records:
        if record is None or record.status != MaintenanceStatus.SCHEDULED:
            continue

        due_date = as_utc(record.next_service_due_date)
        if due_date is None:
            continue

        if nearest is None or due_date < nearest:
            nearest = due_date

        if due_date < now:
            overdue = True
            due_soon = False
            continue

        if not overdue and due_date <= soon_threshold:
            due_soon = True

    return MaintenanceReminder(
        service_due_soon=due_soon,
        service_overdue=overdue,
        nearest_service_due_date=nearest,
    )


async def has_due_maintenance(session: AsyncSession, vehicle_id: int, now: datetime) -> bool:
    result = await session.execute(
        select(MaintenanceRecord.id).where(
            MaintenanceRecord.vehicle_id == vehicle_id,
            MaintenanceRecord.status == MaintenanceStatus.SCHEDULED,
            MaintenanceRecord.service_date <= now,
        ).limit(1)
    )
    return result.first() is not None


async def sync_fleet_status_from_maintenance(session: AsyncSession, vehicle_id: int, now=None) -> bool:
    """
    Move a vehicle into Maintenance when a scheduled service is due, and back
    to Available once nothing due is left. Rented or held vehicles are left
    alone. Returns True when the status changed.
    """
    now = as_utc(now) or utcnow()
    vehicle = await get_vehicle(session, vehicle_id)
    if vehicle is None or vehicle.fleet_status == FleetStatus.RENTED:
        return False

    if await has_due_maintenance(session, vehicle_id, now):
        if vehicle.fleet_status in (FleetStatus.MAINTENANCE, FleetStatus.INACTIVE):
            return False

        changed = await compare_and_set_status(
            session,
            vehicle_id,
            expected=(vehicle.fleet_status,),
            target=FleetStatus.MAINTENANCE,
            expected_version=vehicle.version,
            require_unblocked=True,
        )
        if changed:
            logger.info(f"Vehicle {vehicle_id} moved to Maintenance (service due)")
        return changed

    if vehicle.fleet_status == FleetStatus.MAINTENANCE:
        changed = await compare_and_set_status(
            session,
            vehicle_id,
            expected=(FleetStatus.MAINTENANCE,),
            target=FleetStatus.AVAILABLE,
            expected_version=vehicle.version,
            require_unblocked=True,
        )
        if changed:
            logger.info(f"Vehicle {vehicle_id} back to Available after maintenance")
        return changed

    return False


def _parse_maintenance_type(value) -> MaintenanceType:
    if isinstance(value, MaintenanceType):
        return value
    try:
        return MaintenanceType(str(value or "").strip())
    except ValueError:
        raise ValidationFailed(f"Unknown service type: {value}")


class MaintenanceService:
    """Admin operations on maintenance records"""

    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def schedule_maintenance(
        self,
        vehicle_id: int,
        service_date,
        service_type=MaintenanceType.REGULAR_SERVICE,
        description: str = "",
        next_service_due_date=None,
        service_cost=0,
        now=None,
    ) -> MaintenanceRecord:
        now = as_utc(now) or utcnow()
        service_at = as_utc(service_date)
        if service_at is None:
            raise ValidationFailed("Invalid service date")

        async with self.session_factory() as session:
            try:
                vehicle = await get_vehicle(session, vehicle_id)
                if vehicle is None:
                    raise NotFound(f"Vehicle {vehicle_id} not found")

                if service_at <= now:
                    if vehicle.fleet_status == FleetStatus.RENTED:
                        raise FleetStateConflict("Cannot move to Maintenance while vehicle is rented")
                    if await has_blocking_reservation(session, vehicle_id):
                        raise FleetStateConflict("Vehicle has an active request or booking")

                record = MaintenanceRecord(
                    vehicle_id=vehicle_id,
                    service_type=_parse_maintenance_type(service_type),
                    description=str(description or "").strip(),
                    status=MaintenanceStatus.SCHEDULED,
                    service_date=service_at,
                    next_service_due_date=as_utc(next_service_due_date),
                    service_cost=to_amount(service_cost),
                )
                session.add(record)
                await session.flush()

                await sync_fleet_status_from_maintenance(session, vehicle_id, now)
                await session.commit()
                logger.info(f"Maintenance {record.id} scheduled for vehicle {vehicle_id}")
                return record
            except Exception:
                await session.rollback()
                raise

    async def complete_maintenance(self, record_id: int, service_cost=None, now=None) -> MaintenanceRecord:
        now = as_utc(now) or utcnow()

        async with self.session_factory() as session:
            try:
                record = await session.get(MaintenanceRecord, record_id)
                if record is None:
                    raise NotFound(f"Maintenance record {record_id} not found")
                if record.status == MaintenanceStatus.COMPLETED:
                    raise WrongState("Maintenance is already completed")

                record.status = MaintenanceStatus.COMPLETED
                record.completed_at = now
                if service_cost is not None:
                    record.service_cost = to_amount(service_cost)
                await session.flush()

                await sync_fleet_status_from_maintenance(session, record.vehicle_id, now)
                await session.commit()
                logger.info(f"Maintenance {record_id} completed")
                return record
            except Exception:
                await session.rollback()
                raise

    async def list_records(self, vehicle_id: int):
        async with self.session_factory() as session:
            result = await session.execute(
                select(MaintenanceRecord)
                .where(MaintenanceRecord.vehicle_id == vehicle_id)
                .order_by(MaintenanceRecord.service_date)
            )
            return list(result.scalars().all())

    async def sync_all(self, now=None) -> int:
        """Periodic sync for every vehicle with maintenance history"""
        now = as_utc(now) or utcnow()
        changed = 0
        async with self.session_factory() as session:
            result = await session.execute(select(MaintenanceRecord.vehicle_id).distinct())
            vehicle_ids = [row[0] for row in result.all()]

            for vehicle_id in vehicle_ids:
                try:
                    if await sync_fleet_status_from_maintenance(session, vehicle_id, now):
                        changed += 1
                    await session.commit()
                except Exception as e:
                    await session.rollback()
                    logger.error(f"Maintenance sync failed for vehicle {vehicle_id}: {e}")
        return changed
