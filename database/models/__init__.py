from .user import User, UserRole
from .vehicle import Vehicle, FleetStatus, PriceSource
from .maintenance import MaintenanceRecord, MaintenanceType, MaintenanceStatus
from .rental import PaymentStatus, PaymentMethod, BargainStatus
from .request import RentalRequest, RequestStatus
from .booking import Booking, BookingStatus, RentalStage, RefundStatus, STAGE_ORDER
from .notification import NotificationEvent, NotificationEventType

__all__ = [
    "User", "UserRole",
    "Vehicle", "FleetStatus", "PriceSource",
    "MaintenanceRecord", "MaintenanceType", "MaintenanceStatus",
    "PaymentStatus", "PaymentMethod", "BargainStatus",
    "RentalRequest", "RequestStatus",
    "Booking", "BookingStatus", "RentalStage", "RefundStatus", "STAGE_ORDER",
    "NotificationEvent", "NotificationEventType",
]
