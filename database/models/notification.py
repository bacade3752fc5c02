from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.sql import func
from database.base import Base
import enum


class NotificationEventType(enum.Enum):
    REQUEST_CREATED = "request_created"             # Pay advance to confirm
    ADVANCE_PAID = "advance_paid"
    BOOKING_AWAITING_PAYMENT = "booking_awaiting_payment"
    BOOKING_AUTO_CANCELLED = "booking_auto_cancelled"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    REFUND_PROCESSED = "refund_processed"


class NotificationEvent(Base):
    """Outbox row. Delivery (email etc.) is done by an external dispatcher."""

    __tablename__ = "notification_events"
    __table_args__ = (
        UniqueConstraint("event_type", "booking_id", name="uq_notification_event_booking"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)

    # Requests get deleted on conversion, so no FK here
    request_id = Column(Integer, nullable=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    dispatched_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<NotificationEvent(id={self.id}, type={self.event_type}, booking_id={self.booking_id})>"
