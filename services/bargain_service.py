"""
Bargain (price negotiation) embedded in a rental request or booking.

    NONE -> USER_OFFERED <-> ADMIN_COUNTERED -> ACCEPTED / REJECTED -> LOCKED

USER_OFFERED is answered by the admin (accept, counter, reject),
ADMIN_COUNTERED by the user (accept, reject). LOCKED is set only when a
request becomes a booking and freezes the negotiation for good.
"""
from decimal import Decimal
from typing import Optional

from loguru import logger

from config.settings import settings
from database.base import async_session_factory
from database.models.rental import BargainStatus, PaymentStatus
from database.models.request import RentalRequest, RequestStatus
from database.models.booking import Booking, BookingStatus, RentalStage
from services.exceptions import BargainLocked, InvalidAction, NotFound, ValidationFailed, WrongState
from services.settlement_math import (
    calculate_advance_breakdown,
    resolve_advance_paid,
    to_amount,
    to_decimal,
    chargeable_damage_cost,
    ZERO,
)


ACTION_OFFER = "offer"
ACTION_ACCEPT = "accept"
ACTION_COUNTER = "counter"
ACTION_REJECT = "reject"
BARGAIN_ACTIONS = (ACTION_OFFER, ACTION_ACCEPT, ACTION_COUNTER, ACTION_REJECT)

OFFER_STATES = (BargainStatus.NONE, BargainStatus.USER_OFFERED, BargainStatus.REJECTED)
ANSWERABLE_STATES = (BargainStatus.USER_OFFERED, BargainStatus.ADMIN_COUNTERED)

ENTITY_REQUEST = "request"
ENTITY_BOOKING = "booking"


def _status(entity) -> BargainStatus:
    return entity.bargain_status or BargainStatus.NONE


def _positive_price(value, message: str) -> Decimal:
    price = to_decimal(value, None)
    if price is None or price <= 0:
        raise ValidationFailed(message)
    return to_amount(price)


def _ensure_not_locked(entity) -> None:
    if _status(entity) == BargainStatus.LOCKED:
        raise BargainLocked("Bargain is locked, no further changes allowed")


def apply_final_price(entity, final_amount) -> None:
    """Set the final price and recompute the advance split right away"""
    breakdown = calculate_advance_breakdown(final_amount)
    entity.final_amount = breakdown.final_amount
    entity.advance_rate = breakdown.advance_rate
    entity.advance_required = breakdown.advance_required

    if isinstance(entity, Booking):
        if entity.payment_status == PaymentStatus.FULLY_PAID:
            entity.remaining_amount = ZERO
        else:
            due = max(breakdown.final_amount - resolve_advance_paid(entity), ZERO)
            entity.remaining_amount = to_amount(due + to_amount(entity.late_fee) + chargeable_damage_cost(entity))
    else:
        entity.remaining_amount = breakdown.remaining_amount


def offer(entity, price, max_attempts: Optional[int] = None) -> None:
    _ensure_not_locked(entity)
    status = _status(entity)

    if status == BargainStatus.ADMIN_COUNTERED:
        raise InvalidAction("Please respond to the admin counter offer first")
    if status not in OFFER_STATES:
        raise InvalidAction(f"Cannot make an offer while bargain is {status.value}")

    limit = settings.max_bargain_attempts if max_attempts is None else max_attempts
    attempts = entity.bargain_user_attempts or 0
    if attempts >= limit:
        raise InvalidAction("Maximum bargain attempts reached")

    entity.bargain_user_price = _positive_price(price, "Invalid offered price")
    entity.bargain_user_attempts = attempts + 1
    entity.bargain_status = BargainStatus.USER_OFFERED


def accept(entity) -> None:
    _ensure_not_locked(entity)
    status = _status(entity)

    if status == BargainStatus.USER_OFFERED:
        agreed = entity.bargain_user_price
    elif status == BargainStatus.ADMIN_COUNTERED:
        agreed = entity.bargain_admin_counter_price
    else:
        raise InvalidAction(f"Nothing to accept while bargain is {status.value}")

    apply_final_price(entity, _positive_price(agreed, "Bargain has no price to accept"))
    entity.bargain_status = BargainStatus.ACCEPTED


def counter(entity, counter_price) -> None:
    _ensure_not_locked(entity)
    if _status(entity) != BargainStatus.USER_OFFERED:
        raise InvalidAction("No user bargain to respond to")

    entity.bargain_admin_counter_price = _positive_price(counter_price, "Valid counter price is required")
    entity.bargain_status = BargainStatus.ADMIN_COUNTERED


def reject(entity) -> None:
    _ensure_not_locked(entity)
    if _status(entity) not in ANSWERABLE_STATES:
        raise InvalidAction("No open offer to reject")

    entity.bargain_status = BargainStatus.REJECTED


def lock(entity) -> bool:
    """Freeze at conversion. NONE and REJECTED stay as they are."""
    status = _status(entity)
    if status in (BargainStatus.NONE, BargainStatus.REJECTED, BargainStatus.LOCKED):
        return False
    entity.bargain_status = BargainStatus.LOCKED
    return True


def apply_transition(entity, action: str, price=None, max_attempts: Optional[int] = None) -> None:
    _ensure_not_locked(entity)
    normalized = str(action or "").strip().lower()

    if normalized == ACTION_OFFER:
        offer(entity, price, max_attempts)
    elif normalized == ACTION_ACCEPT:
        accept(entity)
    elif normalized == ACTION_COUNTER:
        counter(entity, price)
    elif normalized == ACTION_REJECT:
        reject(entity)
    else:
        raise InvalidAction(f"Invalid action: {action}")


def _ensure_negotiable(entity) -> None:
    if isinstance(entity, RentalRequest):
        if entity.status != RequestStatus.PENDING:
            raise WrongState("Bargaining is allowed only on pending requests")
        return

    if entity.booking_status not in (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED):
        raise WrongState("Bargaining is not allowed for this booking status")
    if entity.rental_stage == RentalStage.COMPLETED:
        raise WrongState("Cannot bargain on completed trips")


class BargainService:
    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def apply_bargain_action(
        self,
        entity_kind: str,
        entity_id: int,
        action: str,
        counter_price=None,
        offered_price=None,
    ):
        """
        Run one bargain action on a request or booking and persist it.

        Args:
            entity_kind: "request" or "booking"
            action: offer, accept, counter or reject
            counter_price: admin counter (for counter)
            offered_price: user offer (for offer)
        """
        model = {ENTITY_REQUEST: RentalRequest, ENTITY_BOOKING: Booking}.get(str(entity_kind or "").lower())
        if model is None:
            raise InvalidAction(f"Unknown bargain target: {entity_kind}")

        price = offered_price if str(action or "").strip().lower() == ACTION_OFFER else counter_price

        async with self.session_factory() as session:
            try:
                entity = await session.get(model, entity_id, with_for_update=True)
                if entity is None:
                    raise NotFound(f"{model.__name__} {entity_id} not found")

                _ensure_not_locked(entity)
                _ensure_negotiable(entity)
                apply_transition(entity, action, price)

                await session.commit()
                logger.info(
                    f"Bargain {action} on {entity_kind} {entity_id}: now {entity.bargain_status.value}"
                )
                return entity
            except Exception:
                await session.rollback()
                raise
