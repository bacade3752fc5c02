"""
Errors raised by the rental engine.

The boundary layer (HTTP, CLI) maps them: ValidationFailed -> 400,
NotFound -> 404, StateConflict -> 409/422.
"""


class RentalError(Exception):
    code = "rental_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


# Validation

class ValidationFailed(RentalError):
    code = "validation_failed"


class InvalidWindow(ValidationFailed):
    code = "invalid_window"


class InvalidAction(ValidationFailed):
    code = "invalid_action"


class InvalidPaymentMethod(ValidationFailed):
    code = "invalid_payment_method"


# Missing records

class NotFound(RentalError):
    code = "not_found"


# State conflicts (no side effects, caller may retry with fresh state)

class StateConflict(RentalError):
    code = "state_conflict"


class FleetStateConflict(StateConflict):
    code = "fleet_state_conflict"


class VehicleUnavailable(StateConflict):
    code = "vehicle_unavailable"


class DuplicatePendingRequest(StateConflict):
    code = "duplicate_pending_request"


class WrongState(StateConflict):
    code = "wrong_state"


class AlreadyInspected(StateConflict):
    code = "already_inspected"


class AlreadyLocked(StateConflict):
    code = "already_locked"


class ReturnInspectionMissing(StateConflict):
    code = "return_inspection_missing"


class BargainLocked(StateConflict):
    code = "bargain_locked"


class RefundNotAllowed(StateConflict):
    code = "refund_not_allowed"
