"""Calendar persistence service."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from voice_bridge.db.models import CalendarEvent


def to_storage(value: datetime) -> datetime:
    """Aware datetime -> naive UTC for storage. Naive input is taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: datetime) -> datetime:
    """Stored naive UTC -> aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CalendarStore:
    """Reads and creates calendar entries for an agency."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def list_events(
        self, agency_id: str, range_start: datetime, range_end: datetime
    ) -> List[CalendarEvent]:
        """Non-cancelled events overlapping [range_start, range_end)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CalendarEvent)
                .where(
                    CalendarEvent.agency_id == agency_id,
                    CalendarEvent.start_time < to_storage(range_end),
                    CalendarEvent.end_time > to_storage(range_start),
                    CalendarEvent.status != "cancelled",
                )
                .order_by(CalendarEvent.start_time)
            )
            events = list(result.scalars().all())
        for event in events:
            event.start_time = from_storage(event.start_time)
            event.end_time = from_storage(event.end_time)
        return events

    async def create_event(
        self,
        agency_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        event_type: str = "appointment",
    ) -> CalendarEvent:
        """Create a scheduled calendar entry."""
        event = CalendarEvent(
            agency_id=agency_id,
            title=title,
            start_time=to_storage(start_time),
            end_time=to_storage(end_time),
            status="scheduled",
            event_type=event_type,
            notes=notes,
            conversation_id=conversation_id,
            event_metadata=metadata,
        )
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()
            await session.refresh(event)
        event.start_time = from_storage(event.start_time)
        event.end_time = from_storage(event.end_time)
        return event
