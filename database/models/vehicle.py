from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum, Numeric
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
import enum


def enum_values(enum_class):
    """Persist enum members by value ("Available"), not by name"""
    return [member.value for member in enum_class]


class FleetStatus(enum.Enum):
    AVAILABLE = "Available"       # Free to book
    RESERVED = "Reserved"         # Held by a pending request or an unpicked booking
    RENTED = "Rented"             # Handed over to the customer
    MAINTENANCE = "Maintenance"   # In service
    INACTIVE = "Inactive"         # Withdrawn by an admin


class PriceSource(enum.Enum):
    BASE = "Base"
    DYNAMIC = "Dynamic"
    MANUAL = "Manual"


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    number = Column(String(50), unique=True, nullable=False, index=True)
    model = Column(String(255), nullable=False)
    description = Column(String(500), nullable=True)

    # Fleet availability, only changed by services.fleet_service
    fleet_status = Column(
        Enum(FleetStatus, name="fleet_status", values_callable=enum_values),
        default=FleetStatus.AVAILABLE,
        nullable=False,
    )
    version = Column(Integer, default=0, nullable=False)

    # Pricing
    price_per_day = Column(Numeric(10, 2), nullable=False, default=0)
    manual_override_price = Column(Numeric(10, 2), nullable=True)
    dynamic_price_enabled = Column(Boolean, default=False, nullable=False)
    current_dynamic_price = Column(Numeric(10, 2), nullable=True)

    # Usage
    current_mileage = Column(Integer, nullable=True)
    total_trips_completed = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    maintenance_records = relationship("MaintenanceRecord", back_populates="vehicle")

    def __repr__(self):
        return f"<Vehicle(id={self.id}, number={self.number}, fleet_status={self.fleet_status.value})>"

    @property
    def is_available(self) -> bool:
        return self.fleet_status == FleetStatus.AVAILABLE
