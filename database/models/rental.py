from sqlalchemy import Column, Integer, DateTime, Enum, Numeric
from database.models.vehicle import enum_values, PriceSource
import enum


class PaymentStatus(enum.Enum):
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"   # Advance captured
    FULLY_PAID = "Fully Paid"
    REFUNDED = "Refunded"


class PaymentMethod(enum.Enum):
    NONE = "NONE"
    CARD = "CARD"
    UPI = "UPI"
    NETBANKING = "NETBANKING"
    CASH = "CASH"


class BargainStatus(enum.Enum):
    NONE = "NONE"
    USER_OFFERED = "USER_OFFERED"
    ADMIN_COUNTERED = "ADMIN_COUNTERED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    LOCKED = "LOCKED"


class RentalWindowMixin:
    """Pickup/drop window shared by requests and bookings"""

    pickup_at = Column(DateTime(timezone=True), nullable=False)
    drop_at = Column(DateTime(timezone=True), nullable=False)
    grace_period_hours = Column(Numeric(6, 2), default=1, nullable=False)
    billable_days = Column(Numeric(6, 1), default=0, nullable=False)


class PricingMixin:
    """Price snapshot and advance breakdown"""

    base_per_day_price = Column(Numeric(10, 2), default=0, nullable=False)
    locked_per_day_price = Column(Numeric(10, 2), default=0, nullable=False)
    price_source = Column(
        Enum(PriceSource, name="price_source", values_callable=enum_values),
        default=PriceSource.BASE,
        nullable=False,
    )

    total_amount = Column(Numeric(10, 2), default=0, nullable=False)
    final_amount = Column(Numeric(10, 2), default=0, nullable=False)
    advance_rate = Column(Numeric(4, 2), default=0, nullable=False)
    advance_required = Column(Numeric(10, 2), default=0, nullable=False)
    advance_paid = Column(Numeric(10, 2), default=0, nullable=False)
    remaining_amount = Column(Numeric(10, 2), default=0, nullable=False)

    payment_status = Column(
        Enum(PaymentStatus, name="payment_status", values_callable=enum_values),
        default=PaymentStatus.UNPAID,
        nullable=False,
    )
    payment_method = Column(
        Enum(PaymentMethod, name="payment_method", values_callable=enum_values),
        default=PaymentMethod.NONE,
        nullable=False,
    )
    advance_paid_at = Column(DateTime(timezone=True), nullable=True)


class BargainMixin:
    """Embedded negotiation record, see services.bargain_service"""

    bargain_status = Column(
        Enum(BargainStatus, name="bargain_status", values_callable=enum_values),
        default=BargainStatus.NONE,
        nullable=False,
    )
    bargain_user_price = Column(Numeric(10, 2), nullable=True)
    bargain_admin_counter_price = Column(Numeric(10, 2), nullable=True)
    bargain_user_attempts = Column(Integer, default=0, nullable=False)

    @property
    def has_bargain(self) -> bool:
        return self.bargain_status not in (None, BargainStatus.NONE)
