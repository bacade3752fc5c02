import asyncio
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.base import async_session_factory, init_db
from database.models.vehicle import Vehicle, FleetStatus
from database.models.user import User, UserRole
from sqlalchemy import select, func


VEHICLES = [
    {"number": "KA01AB1234", "model": "Maruti Swift", "description": "Hatchback, manual", "price_per_day": 1800},
    {"number": "KA01AB5678", "model": "Hyundai Creta", "description": "SUV, automatic", "price_per_day": 3200},
    {"number": "KA02CD4321", "model": "Toyota Innova", "description": "7 seater", "price_per_day": 4500},
    {"number": "KA03EF1111", "model": "Honda City", "description": "Sedan, automatic", "price_per_day": 2600},
    {"number": "KA05GH2222", "model": "Mahindra Thar", "description": "4x4, convertible", "price_per_day": 5200},
]


async def add_test_vehicles():
    """Seed a few vehicles and a demo client"""
    await init_db()

    async with async_session_factory() as session:
        count = (await session.execute(select(func.count(Vehicle.id)))).scalar()

        if count > 0:
            print(f"Database already has {count} vehicles, skipping.")
            return

        for data in VEHICLES:
            session.add(Vehicle(fleet_status=FleetStatus.AVAILABLE, **data))

        demo = await session.execute(select(User).where(User.email == "demo@example.com"))
        if demo.scalar_one_or_none() is None:
            session.add(User(full_name="Demo Client", email="demo@example.com", role=UserRole.CLIENT))

        await session.commit()
        print(f"✅ Added {len(VEHICLES)} test vehicles")

        print("\n📋 Vehicles:")
        for data in VEHICLES:
            print(f"🚗 {data['number']} - {data['model']} ({data['price_per_day']}/day)")


if __name__ == "__main__":
    asyncio.run(add_test_vehicles())
