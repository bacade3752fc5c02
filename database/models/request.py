from sqlalchemy import Column, Integer, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
from database.models.vehicle import enum_values
from database.models.rental import RentalWindowMixin, PricingMixin, BargainMixin
import enum


class RequestStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RentalRequest(RentalWindowMixin, PricingMixin, BargainMixin, Base):
    """Unconfirmed rental intent. Deleted once converted, rejected or expired."""

    __tablename__ = "rental_requests"

    id = Column(Integer, primary_key=True, index=True)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)

    status = Column(
        Enum(RequestStatus, name="request_status", values_callable=enum_values),
        default=RequestStatus.PENDING,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    requester = relationship("User", back_populates="requests")
    vehicle = relationship("Vehicle")

    def __repr__(self):
        return f"<RentalRequest(id={self.id}, vehicle_id={self.vehicle_id}, status={self.status.value})>"

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING
