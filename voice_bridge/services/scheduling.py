"""
Appointment scheduling for voice agents.

Availability is computed on demand from an agency's calendar: a fixed business
window split on fixed boundaries, minus every slot that overlaps a non-cancelled
entry. Nothing computed here is persisted; only bookings write to the calendar.

Bookings are not re-validated against the calendar. Two callers booking the
same slot at nearly the same moment will both succeed.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from voice_bridge.config.constants import (
    BUSINESS_DAY_END_HOUR,
    BUSINESS_DAY_START_HOUR,
    DEFAULT_APPOINTMENT_MINUTES,
    DEFAULT_APPOINTMENT_TITLE,
    DEFAULT_DAYS_TO_SEARCH,
    LOGGER_NAME,
    MAX_ALTERNATIVE_SLOTS,
    MAX_DAYS_TO_SEARCH,
    SLOT_GRANULARITY_MINUTES,
)
from voice_bridge.services.persistence.calendar import CalendarStore

logger = logging.getLogger(LOGGER_NAME)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
NEXT_WEEKDAY_PATTERN = re.compile(r"next\s+(\w+)")


class SchedulingError(ValueError):
    """Raised for scheduling requests that cannot be carried out."""


def spoken_time(value: datetime) -> str:
    """Time of day as it should be read out, e.g. ``9:30 AM``."""
    return value.strftime("%I:%M %p").lstrip("0")


@dataclass(frozen=True)
class AvailabilitySlot:
    """A free interval of the requested duration."""

    start: datetime
    end: datetime

    def spoken_time(self) -> str:
        return spoken_time(self.start)


@dataclass
class AvailabilityResult:
    date: date
    slots: List[AvailabilitySlot]
    message: str


@dataclass
class NextSlotResult:
    slot: Optional[AvailabilitySlot]
    alternatives: List[AvailabilitySlot] = field(default_factory=list)
    label: str = ""
    message: str = ""

    @property
    def found(self) -> bool:
        return self.slot is not None


@dataclass
class BookingResult:
    event_id: str
    start: datetime
    end: datetime
    message: str


def resolve_date_spec(date_spec: str, today: date) -> date:
    """
    Turn a caller's date phrase into a calendar date.

    Accepts ``today``, ``tomorrow``, ``next <weekday>`` (never today; the same
    weekday means one week ahead) and anything ``dateutil`` can parse. Phrases
    that cannot be understood resolve to ``today``.
    """
    lowered = (date_spec or "").lower().strip()

    if lowered == "today":
        return today
    if lowered == "tomorrow":
        return today + timedelta(days=1)

    match = NEXT_WEEKDAY_PATTERN.search(lowered)
    if match and match.group(1) in WEEKDAYS:
        days_until = WEEKDAYS.index(match.group(1)) - today.weekday()
        if days_until <= 0:
            days_until += 7
        return today + timedelta(days=days_until)

    try:
        default = datetime.combine(today, time.min)
        return date_parser.parse(date_spec, default=default).date()
    except (ValueError, OverflowError, TypeError):
        logger.info(f"Could not parse date {date_spec!r}, falling back to today")
        return today


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Half-open interval overlap test."""
    return start < other_end and end > other_start


def generate_slots(
    day: date,
    events: Iterable,
    duration_minutes: int,
    tz: Union[ZoneInfo, timezone],
) -> List[AvailabilitySlot]:
    """
    Free slots on ``day`` inside the business window, in chronological order.

    Slots start on granularity boundaries, end no later than the close of the
    window, and never overlap an event (events need ``start_time``/``end_time``).
    """
    duration = timedelta(minutes=duration_minutes)
    busy = [(event.start_time, event.end_time) for event in events]
    window_end = datetime.combine(day, time(BUSINESS_DAY_END_HOUR), tzinfo=tz)

    slots = []
    slot_start = datetime.combine(day, time(BUSINESS_DAY_START_HOUR), tzinfo=tz)
    while slot_start < window_end:
        slot_end = slot_start + duration
        if slot_end > window_end:
            break
        if not any(overlaps(slot_start, slot_end, busy_start, busy_end) for busy_start, busy_end in busy):
            slots.append(AvailabilitySlot(start=slot_start, end=slot_end))
        slot_start += timedelta(minutes=SLOT_GRANULARITY_MINUTES)
    return slots


class SchedulingEngine:
    """Availability queries and bookings against an agency calendar."""

    def __init__(
        self,
        calendar_store: CalendarStore,
        timezone_name: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.calendar_store = calendar_store
        self.tz = ZoneInfo(timezone_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    async def _events_on(self, agency_id: str, day: date) -> List:
        day_start = datetime.combine(day, time.min, tzinfo=self.tz)
        day_end = day_start + timedelta(days=1)
        return await self.calendar_store.list_events(agency_id, day_start, day_end)

    @staticmethod
    def _validate(agency_id: Optional[str], duration_minutes: int) -> None:
        if not agency_id:
            raise SchedulingError("agency id is required")
        if duration_minutes <= 0:
            raise SchedulingError(f"duration must be positive, got {duration_minutes}")

    async def check_availability(
        self,
        agency_id: str,
        date_spec: str,
        duration_minutes: int = DEFAULT_APPOINTMENT_MINUTES,
    ) -> AvailabilityResult:
        """Free slots for a day described in natural language or ISO form."""
        self._validate(agency_id, duration_minutes)
        target = resolve_date_spec(date_spec, self.now().date())
        events = await self._events_on(agency_id, target)
        slots = generate_slots(target, events, duration_minutes, self.tz)

        logger.info(
            f"Availability for agency {agency_id} on {target.isoformat()}: "
            f"{len(events)} events, {len(slots)} free slots"
        )
        if slots:
            message = f"Available times on {target.strftime('%A, %B %d, %Y')}: {len(slots)} slots"
        else:
            message = "No availability on that date"
        return AvailabilityResult(date=target, slots=slots, message=message)

    async def get_next_available_slot(
        self,
        agency_id: str,
        duration_minutes: int = DEFAULT_APPOINTMENT_MINUTES,
        days_to_search: int = DEFAULT_DAYS_TO_SEARCH,
    ) -> NextSlotResult:
        """Earliest free weekday slot from now, plus a few later ones that day."""
        self._validate(agency_id, duration_minutes)
        max_days = max(1, min(int(days_to_search), MAX_DAYS_TO_SEARCH))
        now = self.now()

        for day_offset in range(max_days):
            day = now.date() + timedelta(days=day_offset)
            if day.weekday() >= 5:
                continue

            events = await self._events_on(agency_id, day)
            slots = generate_slots(day, events, duration_minutes, self.tz)
            if day_offset == 0:
                slots = [slot for slot in slots if slot.start > now]

            logger.debug(f"Next-slot search: {day.isoformat()} has {len(slots)} free slots")
            if slots:
                first = slots[0]
                label = f"{day.strftime('%A, %B %d')} at {first.spoken_time()}"
                return NextSlotResult(
                    slot=first,
                    alternatives=slots[1:1 + MAX_ALTERNATIVE_SLOTS],
                    label=label,
                    message=f"Next available: {label}",
                )

        logger.info(f"No availability for agency {agency_id} in the next {max_days} days")
        return NextSlotResult(slot=None, message=f"No availability in the next {max_days} days.")

    def parse_start(self, start: Union[str, datetime]) -> datetime:
        """Booking start as an aware datetime; naive values are business-local."""
        if isinstance(start, str):
            try:
                start = date_parser.isoparse(start)
            except (ValueError, OverflowError) as e:
                raise SchedulingError(f"invalid appointment time {start!r}") from e
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.tz)
        return start

    async def book_appointment(
        self,
        agency_id: str,
        start: Union[str, datetime],
        duration_minutes: int = DEFAULT_APPOINTMENT_MINUTES,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> BookingResult:
        """Create an appointment. Availability is not re-checked."""
        self._validate(agency_id, duration_minutes)
        start_time = self.parse_start(start)
        end_time = start_time + timedelta(minutes=duration_minutes)

        event = await self.calendar_store.create_event(
            agency_id=agency_id,
            title=title or DEFAULT_APPOINTMENT_TITLE,
            start_time=start_time,
            end_time=end_time,
            notes=notes,
            conversation_id=conversation_id,
            metadata={"booked_via": "voice_ai", "conversation_id": conversation_id},
        )
        local_start = start_time.astimezone(self.tz)
        logger.info(f"Booked appointment {event.id} for agency {agency_id} at {local_start.isoformat()}")
        return BookingResult(
            event_id=event.id,
            start=start_time,
            end=end_time,
            message=(
                f"Appointment booked for {local_start.strftime('%A, %B %d, %Y')} "
                f"at {spoken_time(local_start)}"
            ),
        )
