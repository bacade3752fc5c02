import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func, update

from conftest import create_user, create_vehicle, fetch
from database.models import FleetStatus, RentalRequest, Vehicle
from services.exceptions import FleetStateConflict, NotFound, ValidationFailed, VehicleUnavailable
from services.fleet_service import (
    can_transition,
    has_blocking_reservation,
    release_many_if_unblocked,
    release_vehicle_if_unblocked,
    try_reserve_vehicle,
)


async def set_status(session_factory, vehicle_id, status):
    async with session_factory() as session:
        await session.execute(update(Vehicle).where(Vehicle.id == vehicle_id).values(fleet_status=status))
        await session.commit()


def test_transition_table():
    assert can_transition(FleetStatus.AVAILABLE, FleetStatus.RESERVED)
    assert can_transition(FleetStatus.RESERVED, FleetStatus.RENTED)
    assert not can_transition(FleetStatus.AVAILABLE, FleetStatus.RENTED)
    assert not can_transition(FleetStatus.AVAILABLE, FleetStatus.RESERVED, manual=True)
    assert can_transition(FleetStatus.RENTED, FleetStatus.INACTIVE, manual=True)
    assert not can_transition(FleetStatus.RENTED, FleetStatus.MAINTENANCE, manual=True)


async def test_reserve_is_compare_and_set(session_factory, vehicle):
    async with session_factory() as session:
        assert await try_reserve_vehicle(session, vehicle.id) is True
        assert await try_reserve_vehicle(session, vehicle.id) is False
        await session.commit()

    stored = await fetch(session_factory, Vehicle, vehicle.id)
    assert stored.fleet_status == FleetStatus.RESERVED
    assert stored.version == 1


async def test_reserve_fails_for_vehicle_in_maintenance(session_factory):
    vehicle = await create_vehicle(session_factory, fleet_status=FleetStatus.MAINTENANCE)
    async with session_factory() as session:
        assert await try_reserve_vehicle(session, vehicle.id) is False


async def test_release_waits_for_blocking_request(session_factory, reservations, client, vehicle, window, now):
    request = await reservations.create_request(client.id, vehicle.id, *window, now=now)

    async with session_factory() as session:
        assert await has_blocking_reservation(session, vehicle.id)
        assert not await has_blocking_reservation(session, vehicle.id, exclude_request_id=request.id)
        assert await release_vehicle_if_unblocked(session, vehicle.id) is False
        await session.commit()

    assert (await fetch(session_factory, Vehicle, vehicle.id)).fleet_status == FleetStatus.RESERVED

    await reservations.reject_request(request.id)
    assert (await fetch(session_factory, Vehicle, vehicle.id)).fleet_status == FleetStatus.AVAILABLE


async def test_release_never_touches_maintenance(session_factory):
    vehicle = await create_vehicle(session_factory, fleet_status=FleetStatus.MAINTENANCE)
    async with session_factory() as session:
        assert await release_vehicle_if_unblocked(session, vehicle.id) is False


async def test_release_many_deduplicates(session_factory):
    first = await create_vehicle(session_factory, number="KA01AA0001", fleet_status=FleetStatus.RESERVED)
    second = await create_vehicle(session_factory, number="KA01AA0002", fleet_status=FleetStatus.RENTED)

    async with session_factory() as session:
        released = await release_many_if_unblocked(session, [first.id, second.id, first.id, None])
        await session.commit()

    assert released == 2


class TestManualFleetStatus:
    async def test_maintenance_round_trip(self, fleet, vehicle):
        updated = await fleet.update_fleet_status(vehicle.id, "Maintenance")
        assert updated.fleet_status == FleetStatus.MAINTENANCE

        updated = await fleet.update_fleet_status(vehicle.id, FleetStatus.AVAILABLE)
        assert updated.fleet_status == FleetStatus.AVAILABLE
        assert updated.version == 2

    async def test_same_status_is_a_no_op(self, fleet, vehicle):
        updated = await fleet.update_fleet_status(vehicle.id, FleetStatus.AVAILABLE)
        assert updated.version == 0

    @pytest.mark.parametrize("target", [FleetStatus.RESERVED, FleetStatus.RENTED])
    async def test_lifecycle_states_are_not_manual(self, fleet, vehicle, target):
        with pytest.raises(FleetStateConflict):
            await fleet.update_fleet_status(vehicle.id, target)

    async def test_rented_vehicle_cannot_enter_maintenance(self, session_factory, fleet, vehicle):
        await set_status(session_factory, vehicle.id, FleetStatus.RENTED)
        with pytest.raises(FleetStateConflict):
            await fleet.update_fleet_status(vehicle.id, FleetStatus.MAINTENANCE)

    async def test_blocked_vehicle_cannot_be_deactivated(self, session_factory, fleet, reservations, client, vehicle, window, now):
        await reservations.create_request(client.id, vehicle.id, *window, now=now)

        with pytest.raises(FleetStateConflict):
            await fleet.update_fleet_status(vehicle.id, FleetStatus.INACTIVE)

        stored = await fetch(session_factory, Vehicle, vehicle.id)
        assert stored.fleet_status == FleetStatus.RESERVED

    async def test_unknown_status(self, fleet, vehicle):
        with pytest.raises(ValidationFailed):
            await fleet.update_fleet_status(vehicle.id, "Flying")

    async def test_missing_vehicle(self, fleet):
        with pytest.raises(NotFound):
            await fleet.update_fleet_status(999, FleetStatus.INACTIVE)


async def test_concurrent_requests_reserve_once(session_factory, reservations, vehicle, window, now):
    users = [await create_user(session_factory, name=f"User {i}", email=f"user{i}@example.com") for i in range(5)]

    results = await asyncio.gather(
        *[reservations.create_request(user.id, vehicle.id, *window, now=now) for user in users],
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, RentalRequest)]
    rejected = [r for r in results if isinstance(r, VehicleUnavailable)]
    assert len(created) == 1
    assert len(rejected) == 4

    async with session_factory() as session:
        count = (await session.execute(select(func.count(RentalRequest.id)))).scalar()
    assert count == 1
    assert (await fetch(session_factory, Vehicle, vehicle.id)).fleet_status == FleetStatus.RESERVED
