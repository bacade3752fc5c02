from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum, ForeignKey, Numeric, Text, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
from database.models.vehicle import enum_values
from database.models.rental import RentalWindowMixin, PricingMixin, BargainMixin, PaymentMethod
import enum


class BookingStatus(enum.Enum):
    PENDING_PAYMENT = "PendingPayment"   # Approved, advance not captured yet
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


class RentalStage(enum.Enum):
    SCHEDULED = "Scheduled"   # Confirmed, not picked up
    ACTIVE = "Active"         # Pickup inspection recorded
    OVERDUE = "Overdue"       # Past drop time + grace, still out
    COMPLETED = "Completed"


# Stages only move forward
STAGE_ORDER = {
    RentalStage.SCHEDULED: 1,
    RentalStage.ACTIVE: 2,
    RentalStage.OVERDUE: 3,
    RentalStage.COMPLETED: 4,
}


class RefundStatus(enum.Enum):
    NONE = "None"
    PROCESSED = "Processed"
    REJECTED = "Rejected"


class Booking(RentalWindowMixin, PricingMixin, BargainMixin, Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    requester_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)

    booking_status = Column(
        Enum(BookingStatus, name="booking_status", values_callable=enum_values),
        default=BookingStatus.PENDING_PAYMENT,
        nullable=False,
        index=True,
    )
    rental_stage = Column(
        Enum(RentalStage, name="rental_stage", values_callable=enum_values),
        nullable=True,
    )
    payment_deadline = Column(DateTime(timezone=True), nullable=True)

    # Late fees, frozen rate at pickup
    hourly_late_rate = Column(Numeric(10, 2), default=0, nullable=False)
    late_hours = Column(Integer, default=0, nullable=False)
    late_fee = Column(Numeric(10, 2), default=0, nullable=False)

    # Pickup handover
    actual_pickup_at = Column(DateTime(timezone=True), nullable=True)
    pickup_inspected_at = Column(DateTime(timezone=True), nullable=True)
    pickup_notes = Column(Text, nullable=True)
    pickup_images = Column(JSON, nullable=True)
    pickup_mileage = Column(Integer, nullable=True)

    # Return inspection
    return_inspected_at = Column(DateTime(timezone=True), nullable=True)
    return_notes = Column(Text, nullable=True)
    return_images = Column(JSON, nullable=True)
    return_mileage = Column(Integer, nullable=True)
    return_inspection_locked = Column(Boolean, default=False, nullable=False)
    damage_detected = Column(Boolean, default=False, nullable=False)
    damage_cost = Column(Numeric(10, 2), default=0, nullable=False)
    damage_discount_percentage = Column(Numeric(5, 2), default=0, nullable=False)

    # Final settlement
    full_payment_amount = Column(Numeric(10, 2), default=0, nullable=False)
    full_payment_method = Column(
        Enum(PaymentMethod, name="payment_method", values_callable=enum_values),
        default=PaymentMethod.NONE,
        nullable=False,
    )
    full_payment_received_at = Column(DateTime(timezone=True), nullable=True)
    actual_return_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Refund
    refund_amount = Column(Numeric(10, 2), default=0, nullable=False)
    refund_status = Column(
        Enum(RefundStatus, name="refund_status", values_callable=enum_values),
        default=RefundStatus.NONE,
        nullable=False,
    )
    refund_reason = Column(Text, nullable=True)
    refund_processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    requester = relationship("User", back_populates="bookings")
    vehicle = relationship("Vehicle")

    def __repr__(self):
        stage = self.rental_stage.value if self.rental_stage else None
        return f"<Booking(id={self.id}, status={self.booking_status.value}, stage={stage})>"

    @property
    def is_confirmed(self) -> bool:
        return self.booking_status == BookingStatus.CONFIRMED

    @property
    def has_locked_return_inspection(self) -> bool:
        return bool(self.return_inspection_locked and self.return_inspected_at)
