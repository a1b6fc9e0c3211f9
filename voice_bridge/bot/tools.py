"""
Tool invocations requested by the Realtime model during a call.

The model asks for a tool by name with JSON arguments; the dispatcher runs the
matching scheduling operation and renders a JSON-serialisable result that is sent
back as the function call output. Failures become results too, so the model can
tell the caller what went wrong instead of the call stalling.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from voice_bridge.config.constants import (
    DEFAULT_APPOINTMENT_MINUTES,
    DEFAULT_DAYS_TO_SEARCH,
    LOGGER_NAME,
)
from voice_bridge.models.openai_schemas import FunctionCallArgumentsDoneEvent
from voice_bridge.services.scheduling import SchedulingEngine, SchedulingError

logger = logging.getLogger(LOGGER_NAME)

GENERIC_FAILURE = {"success": False, "message": "An error occurred. Please try again."}

# Tools that write to the calendar; once started they must run to completion
COMMITTING_TOOLS = frozenset({"book_appointment"})


@dataclass(frozen=True)
class ToolInvocation:
    """One function call issued by the model, answered exactly once."""

    call_id: str
    name: str
    arguments: str

    @classmethod
    def from_event(cls, event: FunctionCallArgumentsDoneEvent) -> "ToolInvocation":
        return cls(call_id=event.call_id, name=event.name, arguments=event.arguments)


def _number(args: Dict[str, Any], key: str, default: int) -> int:
    value = args.get(key)
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError) as e:
        raise SchedulingError(f"{key} must be a number, got {value!r}") from e


class ToolDispatcher:
    """Routes tool invocations for one call to the scheduling engine."""

    def __init__(
        self,
        engine: SchedulingEngine,
        agency_id: str,
        conversation_id: Optional[str] = None,
    ):
        self.engine = engine
        self.agency_id = agency_id
        self.conversation_id = conversation_id
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "check_availability": self.check_availability,
            "book_appointment": self.book_appointment,
            "get_next_available_slot": self.get_next_available_slot,
        }

    async def dispatch(self, invocation: ToolInvocation) -> Dict[str, Any]:
        """Run one invocation; never raises."""
        logger.info(f"Tool call {invocation.name} ({invocation.call_id}): {invocation.arguments}")

        handler = self.handlers.get(invocation.name)
        if handler is None:
            logger.warning(f"Unknown function requested: {invocation.name}")
            return {"success": False, "error": f"Unknown function: {invocation.name}"}

        try:
            args = json.loads(invocation.arguments or "{}")
        except ValueError as e:
            logger.warning(f"Invalid arguments for {invocation.name}: {e}")
            return {"success": False, "message": "The request arguments could not be read."}
        if not isinstance(args, dict):
            return {"success": False, "message": "The request arguments could not be read."}

        try:
            result = await handler(args)
        except SchedulingError as e:
            logger.warning(f"Tool {invocation.name} rejected: {e}")
            result = {"success": False, "message": str(e)}
        except Exception as e:
            logger.error(f"Tool {invocation.name} failed: {e}", exc_info=True)
            result = dict(GENERIC_FAILURE)

        logger.info(f"Tool call {invocation.name} finished: success={result.get('success') is not False}")
        return result

    async def check_availability(self, args: Dict[str, Any]) -> Dict[str, Any]:
        date_spec = args.get("date")
        if not date_spec:
            return {"success": False, "message": "Please specify a date to check availability."}
        duration = _number(args, "duration", DEFAULT_APPOINTMENT_MINUTES)

        result = await self.engine.check_availability(self.agency_id, str(date_spec), duration)
        return {
            "success": True,
            "date": result.date.isoformat(),
            "availableSlots": [slot.spoken_time() for slot in result.slots],
            "message": result.message,
        }

    async def get_next_available_slot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        duration = _number(args, "duration", DEFAULT_APPOINTMENT_MINUTES)
        days = _number(args, "daysToSearch", DEFAULT_DAYS_TO_SEARCH)

        result = await self.engine.get_next_available_slot(self.agency_id, duration, days)
        if not result.found:
            return {"success": False, "message": result.message}
        return {
            "success": True,
            "nextAvailable": {
                "dateTime": result.slot.start.isoformat(),
                "formatted": result.label,
            },
            "otherSlots": [slot.spoken_time() for slot in result.alternatives],
            "message": result.message,
        }

    async def book_appointment(self, args: Dict[str, Any]) -> Dict[str, Any]:
        date_time = args.get("dateTime")
        if not date_time:
            return {"success": False, "message": "Please specify when the appointment should be."}
        duration = _number(args, "duration", DEFAULT_APPOINTMENT_MINUTES)

        booking = await self.engine.book_appointment(
            self.agency_id,
            str(date_time),
            duration,
            title=args.get("title"),
            notes=args.get("notes"),
            conversation_id=self.conversation_id,
        )
        return {
            "success": True,
            "eventId": booking.event_id,
            "dateTime": booking.start.isoformat(),
            "message": booking.message,
        }
