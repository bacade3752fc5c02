"""
Notification outbox.

Events are written in the same transaction as the state change they describe.
Delivery (email, messenger) is done by a separate dispatcher that polls
pending rows; nothing here waits on the network.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.base import async_session_factory
from database.models.notification import NotificationEvent, NotificationEventType
from services.clock import as_utc, utcnow


def _event_type_value(event_type) -> str:
    if isinstance(event_type, NotificationEventType):
        return event_type.value
    return str(event_type)


def _json_safe(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    safe = {}
    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            safe[key] = value
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        elif hasattr(value, "value"):
            safe[key] = value.value
        else:
            safe[key] = str(value)
    return safe


async def queue_event(
    session: AsyncSession,
    event_type,
    booking_id: Optional[int] = None,
    request_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Add an outbox row inside the caller's transaction.

    Booking events are recorded at most once per (event_type, booking_id);
    a repeat returns False and leaves the transaction usable.
    """
    type_value = _event_type_value(event_type)

    if booking_id is not None:
        existing = await session.execute(
            select(NotificationEvent.id).where(
                NotificationEvent.event_type == type_value,
                NotificationEvent.booking_id == booking_id,
            )
        )
        if existing.first() is not None:
            return False

    event = NotificationEvent(
        event_type=type_value,
        booking_id=booking_id,
        request_id=request_id,
        payload=_json_safe(payload),
    )

    try:
        async with session.begin_nested():
            session.add(event)
    except IntegrityError:
        # Lost a race with another writer for the same booking event
        logger.debug(f"Event {type_value} for booking {booking_id} already queued")
        return False

    logger.info(f"Queued {type_value} (booking={booking_id}, request={request_id})")
    return True


class NotificationService:
    """Read side of the outbox for the external dispatcher"""

    def __init__(self, session_factory=async_session_factory):
        self.session_factory = session_factory

    async def list_pending_events(self, limit: int = 100) -> List[NotificationEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationEvent)
                .where(NotificationEvent.dispatched_at.is_(None))
                .order_by(NotificationEvent.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_events_for_booking(self, booking_id: int) -> List[NotificationEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationEvent)
                .where(NotificationEvent.booking_id == booking_id)
                .order_by(NotificationEvent.id)
            )
            return list(result.scalars().all())

    async def mark_dispatched(self, event_ids: List[int], now=None) -> int:
        if not event_ids:
            return 0

        dispatched_at = as_utc(now) or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.id.in_(event_ids),
                    NotificationEvent.dispatched_at.is_(None),
                )
                .values(dispatched_at=dispatched_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount
