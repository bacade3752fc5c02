from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Numeric, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
from database.models.vehicle import enum_values
import enum


class MaintenanceType(enum.Enum):
    REGULAR_SERVICE = "Regular Service"
    OIL_CHANGE = "Oil Change"
    ENGINE_WORK = "Engine Work"
    TIRE_CHANGE = "Tire Change"
    INSURANCE_RENEWAL = "Insurance Renewal"
    OTHER = "Other"


class MaintenanceStatus(enum.Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"


class MaintenanceRecord(Base):
    __tablename__ = "maintenance_records"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)

    service_type = Column(
        Enum(MaintenanceType, name="maintenance_type", values_callable=enum_values),
        default=MaintenanceType.REGULAR_SERVICE,
        nullable=False,
    )
    description = Column(Text, nullable=True)
    status = Column(
        Enum(MaintenanceStatus, name="maintenance_status", values_callable=enum_values),
        default=MaintenanceStatus.SCHEDULED,
        nullable=False,
        index=True,
    )

    service_date = Column(DateTime(timezone=True), nullable=False, index=True)
    next_service_due_date = Column(DateTime(timezone=True), nullable=True)
    service_cost = Column(Numeric(10, 2), default=0, nullable=False)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    vehicle = relationship("Vehicle", back_populates="maintenance_records")

    def __repr__(self):
        return f"<MaintenanceRecord(id={self.id}, vehicle_id={self.vehicle_id}, status={self.status.value})>"
