"""
Bridge between one Twilio media-stream call and one OpenAI Realtime session.

Each accepted caller WebSocket gets its own ``CallSessionBridge``. The bridge
owns the call's state machine::

    IDLE -> RESOLVING -> CONNECTING_AI -> ACTIVE -> CLOSING -> CLOSED

and consumes the two legs on independent asyncio tasks:

- the caller task reads Twilio frames (``start``, ``media``, ``stop``) and
  forwards audio to the AI session;
- the AI task reads Realtime server events and relays audio, transcripts and
  tool calls back to the caller and the conversation log.

A per-call ``asyncio.Lock`` serialises state transitions only. Audio relay
never takes it. Transcript turns are handed to a per-call writer task, so a
slow database never holds up audio from the AI leg.
"""

import asyncio
import functools
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from voice_bridge.audio.codec import AudioDecodeError, AudioFrameCodec
from voice_bridge.bot.realtime_api import RealtimeSessionClient
from voice_bridge.bot.tools import COMMITTING_TOOLS, ToolDispatcher, ToolInvocation
from voice_bridge.config.constants import (
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    LOGGER_NAME,
    MAX_CONSECUTIVE_DECODE_FAILURES,
    TRANSCRIPT_DRAIN_TIMEOUT_SECONDS,
)
from voice_bridge.models.call_session import (
    ALLOWED_TRANSITIONS,
    CallSession,
    CallState,
    TranscriptTurn,
)
from voice_bridge.models.errors import MessageDecodeError
from voice_bridge.models.openai_schemas import (
    ConversationItemCreateEvent,
    ErrorEvent,
    FunctionCallArgumentsDoneEvent,
    FunctionCallOutputItem,
    InputAudioTranscriptionCompletedEvent,
    ResponseAudioDeltaEvent,
    ResponseCreateEvent,
    ResponseDoneEvent,
    ServerEvent,
    SpeechStartedEvent,
)
from voice_bridge.models.twilio_schemas import (
    ClearMessage,
    MediaMessage,
    OutgoingMediaMessage,
    OutgoingMediaPayload,
    StartMessage,
    StopMessage,
    parse_caller_message,
)
from voice_bridge.services.agent_configurator import AgentNotFoundError, AgentSessionConfigurator
from voice_bridge.services.persistence.conversations import ConversationLog
from voice_bridge.services.scheduling import SchedulingEngine

logger = logging.getLogger(LOGGER_NAME)

ClientFactory = Callable[[], RealtimeSessionClient]

TOOL_TIMEOUT_RESULT = {
    "success": False,
    "message": "The request took too long. Please try again.",
}

# A timed-out booking may still commit, so the model must not retry it
BOOKING_PENDING_RESULT = {
    "success": False,
    "pending": True,
    "message": (
        "The booking is still being processed. Do not book this time again; "
        "tell the caller the appointment will be confirmed shortly."
    ),
}


class BridgeStateError(RuntimeError):
    """An illegal state transition was attempted."""


class CallSessionBridge:
    """
    Runs one call from caller socket accept to teardown of both legs.

    Args:
        caller_websocket: The accepted FastAPI WebSocket for the Twilio stream
        configurator: Resolves the agent and builds the session setup
        conversation_log: Transcript persistence
        scheduling_engine: Backs the agent's scheduling tools
        client_factory: Creates the (unconnected) Realtime client for this call
        codec: Audio converter matching the declared session format
        tool_timeout: Seconds a single tool invocation may run
    """

    def __init__(
        self,
        caller_websocket,
        configurator: AgentSessionConfigurator,
        conversation_log: ConversationLog,
        scheduling_engine: SchedulingEngine,
        client_factory: ClientFactory,
        codec: AudioFrameCodec,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ):
        self.caller_websocket = caller_websocket
        self.configurator = configurator
        self.conversation_log = conversation_log
        self.scheduling_engine = scheduling_engine
        self.client_factory = client_factory
        self.codec = codec
        self.tool_timeout = tool_timeout

        self.session = CallSession()
        self.tools: Optional[ToolDispatcher] = None
        self._lock = asyncio.Lock()
        self._caller_open = True
        self._decode_failures = 0
        self._caller_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._ai_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._transcript_queue: Optional[asyncio.Queue] = None
        self._transcript_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def state(self) -> CallState:
        return self.session.state

    def _set_state(self, new_state: CallState) -> None:
        """Apply a transition; caller must hold ``self._lock``."""
        current = self.session.state
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise BridgeStateError(f"illegal transition {current.value} -> {new_state.value}")
        self.session.state = new_state
        logger.info(f"Call {self.session.call_id or '-'}: {current.value} -> {new_state.value}")

    async def run(self) -> None:
        """Consume the caller leg until the call ends, then tear everything down."""
        self._caller_task = asyncio.create_task(self._receive_from_caller())
        try:
            await asyncio.wait({self._caller_task})
            if not self._caller_task.cancelled() and self._caller_task.exception():
                error = self._caller_task.exception()
                logger.error(f"Caller leg failed: {error}", exc_info=error)
        finally:
            await self.close("caller leg ended")

    # Caller leg

    async def _receive_from_caller(self) -> None:
        async for raw in self.caller_websocket.iter_text():
            if self.state in (CallState.CLOSING, CallState.CLOSED):
                break

            try:
                message = parse_caller_message(raw)
            except MessageDecodeError as e:
                logger.warning(f"Skipping malformed caller frame: {e}")
                continue

            if isinstance(message, MediaMessage):
                await self._relay_caller_audio(message)
            elif isinstance(message, StartMessage):
                await self._handle_start(message)
            elif isinstance(message, StopMessage):
                logger.info(f"Caller sent stop for call {self.session.call_id}")
                await self.close("caller hung up")
            else:
                logger.debug(f"Caller event: {message.event}")

            if self.state in (CallState.CLOSING, CallState.CLOSED):
                break
        # The stream ended on its own; the socket is already gone
        if self.state not in (CallState.CLOSING, CallState.CLOSED):
            self._caller_open = False

    async def _relay_caller_audio(self, message: MediaMessage) -> None:
        # Audio is only meaningful once the session is configured
        if self.state is not CallState.ACTIVE:
            return

        try:
            audio = self.codec.decode(message.media.payload)
        except AudioDecodeError as e:
            self._decode_failures += 1
            logger.warning(
                f"Undecodable caller audio ({self._decode_failures} in a row): {e}"
            )
            if self._decode_failures > MAX_CONSECUTIVE_DECODE_FAILURES:
                await self.close("caller audio undecodable")
            return
        self._decode_failures = 0

        client = self.session.realtime_client
        if client is not None:
            await client.append_audio(audio)

    async def _handle_start(self, message: StartMessage) -> None:
        async with self._lock:
            if self.state is not CallState.IDLE:
                logger.warning(f"Ignoring start in state {self.state.value}")
                return
            start = message.start
            self.session.call_id = start.callSid
            self.session.stream_id = message.streamSid or start.streamSid
            self.session.caller_phone = start.from_number
            self.session.called_phone = start.to_number
            self._set_state(CallState.RESOLVING)

        logger.info(
            f"Call {self.session.call_id} started: stream={self.session.stream_id}, "
            f"from={self.session.caller_phone}, to={self.session.called_phone}"
        )

        try:
            profile = await self.configurator.resolve(self.session.called_phone)
        except AgentNotFoundError as e:
            logger.warning(f"Rejecting call {self.session.call_id}: {e}")
            await self.close("agent not found")
            return
        except Exception as e:
            logger.error(f"Agent lookup failed for call {self.session.call_id}: {e}", exc_info=True)
            await self.close("agent not found")
            return

        self.session.agent = profile
        try:
            self.session.conversation_id = await self.conversation_log.open(
                profile, call_sid=self.session.call_id
            )
        except Exception as e:
            logger.error(f"Could not open conversation log: {e}", exc_info=True)

        self.tools = ToolDispatcher(
            self.scheduling_engine, profile.agency_id, self.session.conversation_id
        )

        async with self._lock:
            if self.state is not CallState.RESOLVING:
                return
            self._set_state(CallState.CONNECTING_AI)
            if self.session.conversation_id is not None:
                self._transcript_queue = asyncio.Queue()
                self._transcript_task = asyncio.create_task(self._write_transcript())
            # Connecting runs apart from the caller loop so a stop is seen immediately
            self._connect_task = asyncio.create_task(self._connect_ai_leg())

    # AI leg

    async def _connect_ai_leg(self) -> None:
        client = self.client_factory()
        self.session.realtime_client = client

        if not await client.connect():
            logger.error(f"Could not connect AI leg for call {self.session.call_id}")
            await self.close("AI connection failed")
            return

        if self.state is not CallState.CONNECTING_AI:
            await client.close()
            return

        profile = self.session.agent
        setup = [self.configurator.build_session_update(profile)]
        setup.extend(self.configurator.build_greeting_events(profile))
        for event in setup:
            if not await client.send_event(event):
                await self.close("AI session setup failed")
                return

        async with self._lock:
            if self.state is not CallState.CONNECTING_AI:
                return
            self._set_state(CallState.ACTIVE)
            self._ai_task = asyncio.create_task(self._receive_from_ai(client))

        logger.info(
            f"Call {self.session.call_id} bridged to agent {profile.name} "
            f"(greeting={'yes' if profile.greeting else 'no'})"
        )

    async def _receive_from_ai(self, client: RealtimeSessionClient) -> None:
        try:
            async for event in client.events():
                if self.state is not CallState.ACTIVE:
                    break
                await self._handle_ai_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"AI leg failed for call {self.session.call_id}: {e}", exc_info=True)
        await self.close("AI leg closed")

    async def _handle_ai_event(self, event: ServerEvent) -> None:
        if isinstance(event, ResponseAudioDeltaEvent):
            await self._relay_ai_audio(event)
        elif isinstance(event, SpeechStartedEvent):
            # Caller barged in; drop assistant audio still queued for playback
            if self.session.stream_id:
                await self._send_to_caller(ClearMessage(streamSid=self.session.stream_id))
        elif isinstance(event, InputAudioTranscriptionCompletedEvent):
            self._record_turn("user", event.transcript)
        elif isinstance(event, ResponseDoneEvent):
            self._record_turn("assistant", event.assistant_transcript())
        elif isinstance(event, FunctionCallArgumentsDoneEvent):
            await self._handle_tool_call(ToolInvocation.from_event(event))
        elif isinstance(event, ErrorEvent):
            logger.error(f"Realtime API error: {event.error.message}")
        else:
            logger.debug(f"Realtime event: {event.type}")

    async def _relay_ai_audio(self, event: ResponseAudioDeltaEvent) -> None:
        if not self._caller_open or not self.session.stream_id:
            return
        try:
            payload = self.codec.encode(event.delta)
        except AudioDecodeError as e:
            logger.warning(f"Skipping undecodable audio delta: {e}")
            return
        await self._send_to_caller(
            OutgoingMediaMessage(
                streamSid=self.session.stream_id,
                media=OutgoingMediaPayload(payload=payload),
            )
        )

    async def _send_to_caller(self, message: BaseModel) -> None:
        if not self._caller_open:
            return
        try:
            await self.caller_websocket.send_text(message.model_dump_json())
        except Exception as e:
            logger.info(f"Caller leg gone while sending {message.event}: {e}")
            self._caller_open = False
            self._close_task = asyncio.create_task(self.close("caller leg closed"))

    def _record_turn(self, role: str, text: Optional[str]) -> None:
        text = (text or "").strip()
        if not text:
            return
        turn = TranscriptTurn(role=role, text=text)
        self.session.transcript.append(turn)
        logger.info(f"{role.capitalize()}: {text}")

        if self._transcript_queue is not None:
            self._transcript_queue.put_nowait(turn)

    async def _write_transcript(self) -> None:
        """Persist queued turns one at a time, in the order they were spoken."""
        while True:
            turn = await self._transcript_queue.get()
            try:
                await self.conversation_log.append_turn(self.session.conversation_id, turn)
            except Exception as e:
                logger.error(f"Could not persist {turn.role} turn: {e}", exc_info=True)
            finally:
                self._transcript_queue.task_done()

    async def _handle_tool_call(self, invocation: ToolInvocation) -> None:
        work = asyncio.ensure_future(self.tools.dispatch(invocation))
        committing = invocation.name in COMMITTING_TOOLS
        try:
            result = await asyncio.wait_for(
                asyncio.shield(work) if committing else work, timeout=self.tool_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Tool {invocation.name} timed out after {self.tool_timeout}s")
            if committing:
                work.add_done_callback(functools.partial(self._report_late_result, invocation))
                result = BOOKING_PENDING_RESULT
            else:
                result = TOOL_TIMEOUT_RESULT

        client = self.session.realtime_client
        if client is None or self.state is not CallState.ACTIVE:
            return
        output = ConversationItemCreateEvent(
            item=FunctionCallOutputItem(call_id=invocation.call_id, output=json.dumps(result))
        )
        if await client.send_event(output):
            await client.send_event(ResponseCreateEvent())

    def _report_late_result(self, invocation: ToolInvocation, work: asyncio.Future) -> None:
        if work.cancelled():
            logger.warning(f"Tool {invocation.name} ({invocation.call_id}) was cancelled")
            return
        logger.info(
            f"Tool {invocation.name} ({invocation.call_id}) finished after its timeout: "
            f"{work.result()}"
        )

    # Teardown

    async def close(self, reason: str) -> None:
        """
        Tear down both legs. Safe to call from any task, any number of times.

        The first caller moves the session to CLOSING and records ``reason``;
        later calls wait for that teardown to finish.
        """
        async with self._lock:
            closing = self.state in (CallState.CLOSING, CallState.CLOSED)
            if not closing:
                self.session.close_reason = reason
                self._set_state(CallState.CLOSING)
        if closing:
            # Another task is tearing down; return once it has finished
            await self._closed.wait()
            return

        logger.info(f"Closing call {self.session.call_id or '-'}: {reason}")
        current = asyncio.current_task()
        for task in (self._connect_task, self._ai_task, self._caller_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        client = self.session.realtime_client
        if client is not None:
            await client.close()

        if self._caller_open:
            self._caller_open = False
            try:
                await self.caller_websocket.close()
            except Exception as e:
                logger.debug(f"Caller leg already closed: {e}")

        await self._drain_transcript()

        if self.session.conversation_id is not None:
            try:
                await self.conversation_log.complete(
                    self.session.conversation_id, datetime.now(timezone.utc)
                )
            except Exception as e:
                logger.error(f"Could not complete conversation log: {e}", exc_info=True)

        async with self._lock:
            self._set_state(CallState.CLOSED)
        self._closed.set()
        logger.info(
            f"Call {self.session.call_id or '-'} closed "
            f"({len(self.session.transcript)} transcript turns)"
        )

    async def _drain_transcript(self) -> None:
        """Give queued transcript turns a bounded chance to land, then stop the writer."""
        if self._transcript_task is None:
            return
        try:
            await asyncio.wait_for(
                self._transcript_queue.join(), timeout=TRANSCRIPT_DRAIN_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Transcript for call {self.session.call_id} still writing after "
                f"{TRANSCRIPT_DRAIN_TIMEOUT_SECONDS}s; {self._transcript_queue.qsize()} turns unsaved"
            )
        self._transcript_task.cancel()
        await asyncio.wait({self._transcript_task})
