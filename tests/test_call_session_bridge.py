"""
Unit tests for the call session bridge.

These tests drive a CallSessionBridge with a fake Twilio media-stream socket
and a fake Realtime client, covering the call lifecycle from the start frame
to teardown of both legs.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from voice_bridge.audio.codec import AudioFrameCodec
from voice_bridge.bot.call_session_bridge import BridgeStateError, CallSessionBridge
from voice_bridge.db.models import AiAgent
from voice_bridge.models.call_session import CallState
from voice_bridge.models.openai_schemas import (
    ConversationItemCreateEvent,
    ResponseCreateEvent,
    SessionUpdateEvent,
    parse_server_event,
)
from voice_bridge.services.agent_configurator import AgentSessionConfigurator
from voice_bridge.services.persistence.agents import AgentRepository
from voice_bridge.services.persistence.conversations import ConversationLog
from voice_bridge.services.scheduling import BookingResult

from tests.conftest import AGENCY_ID, AGENT_PHONE

START_FRAME = {
    "event": "start",
    "streamSid": "MZ123",
    "start": {
        "streamSid": "MZ123",
        "callSid": "CA123",
        "customParameters": {"from": "+15551234567", "to": AGENT_PHONE},
    },
}
STOP_FRAME = {"event": "stop", "streamSid": "MZ123"}


def media_frame(payload="AAAA"):
    return {"event": "media", "streamSid": "MZ123", "media": {"payload": payload}}


class MockCallerWebSocket:
    """Twilio side of the call: frames are pushed in, sent frames are recorded."""

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent_messages = []
        self.closed = False
        self.fail_sends = False

    def push(self, message):
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def hang_up(self):
        self.incoming.put_nowait(None)

    async def iter_text(self):
        while True:
            message = await self.incoming.get()
            if message is None:
                return
            yield message

    async def send_text(self, text):
        if self.fail_sends:
            raise RuntimeError("WebSocket is not connected")
        self.sent_messages.append(json.loads(text))

    async def close(self, code=1000):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeRealtimeClient:
    """Realtime side of the call."""

    def __init__(self, connect_result=True, connect_gate=None):
        self.connect_result = connect_result
        self.connect_gate = connect_gate
        self.connect_calls = 0
        self.sent = []
        self.audio = []
        self.closed = False
        self._events = asyncio.Queue()

    async def connect(self):
        self.connect_calls += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        return self.connect_result

    async def send_event(self, event):
        if self.closed:
            return False
        self.sent.append(event)
        return True

    async def append_audio(self, audio):
        if self.closed:
            return False
        self.audio.append(audio)
        return True

    def push(self, payload):
        self._events.put_nowait(parse_server_event(json.dumps(payload)))

    def finish(self):
        self._events.put_nowait(None)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True
        self._events.put_nowait(None)


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_agent(greeting="Thanks for calling, how can I help?"):
    agent = AiAgent(
        id="agent-1",
        agency_id=AGENCY_ID,
        name="Front Desk",
        phone_number=AGENT_PHONE,
        status="active",
        voice_model="alloy",
        system_prompt="You answer calls for Acme Dental.",
        system_greeting=greeting,
        language="en",
    )
    agent.knowledge_bases = []
    return agent


@pytest.fixture
def caller():
    return MockCallerWebSocket()


@pytest.fixture
def realtime():
    return FakeRealtimeClient()


@pytest.fixture
def agent_repository():
    repository = AsyncMock(spec=AgentRepository)
    repository.find_active_by_phone.return_value = make_agent()
    return repository


@pytest.fixture
def conversation_log():
    log = AsyncMock(spec=ConversationLog)
    log.open.return_value = "conv-1"
    return log


@pytest.fixture
def make_bridge(caller, realtime, agent_repository, conversation_log):
    created = []

    def _make(engine=None, tool_timeout=15.0, client=None):
        client = client or realtime

        def client_factory():
            created.append(client)
            return client

        codec = AudioFrameCodec()
        return CallSessionBridge(
            caller,
            configurator=AgentSessionConfigurator(agent_repository, codec),
            conversation_log=conversation_log,
            scheduling_engine=engine or AsyncMock(),
            client_factory=client_factory,
            codec=codec,
            tool_timeout=tool_timeout,
        )

    _make.created = created
    return _make


async def start_active_call(bridge, caller):
    task = asyncio.create_task(bridge.run())
    caller.push(START_FRAME)
    await eventually(lambda: bridge.state is CallState.ACTIVE)
    return task


@pytest.mark.asyncio
async def test_full_call_lifecycle(make_bridge, caller, realtime, conversation_log):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    assert bridge.session.call_id == "CA123"
    assert bridge.session.stream_id == "MZ123"
    assert bridge.session.caller_phone == "+15551234567"
    assert bridge.session.conversation_id == "conv-1"
    conversation_log.open.assert_awaited_once()

    # session.update first, then the greeting priming message and its trigger
    assert isinstance(realtime.sent[0], SessionUpdateEvent)
    assert isinstance(realtime.sent[1], ConversationItemCreateEvent)
    assert isinstance(realtime.sent[2], ResponseCreateEvent)
    assert "Thanks for calling" in realtime.sent[1].item.content[0].text

    caller.push(media_frame("AAAA"))
    caller.push(media_frame("AQID"))
    await eventually(lambda: len(realtime.audio) == 2)
    assert realtime.audio == ["AAAA", "AQID"]

    realtime.push({"type": "response.audio.delta", "delta": "//8="})
    await eventually(lambda: len(caller.sent_messages) == 1)
    assert caller.sent_messages[0] == {
        "event": "media",
        "streamSid": "MZ123",
        "media": {"payload": "//8="},
    }

    realtime.push(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Book me in."}
    )
    realtime.push(
        {
            "type": "response.done",
            "response": {"output": [{"content": [{"type": "audio", "transcript": "Sure thing."}]}]},
        }
    )
    await eventually(lambda: len(bridge.session.transcript) == 2)
    assert [(t.role, t.text) for t in bridge.session.transcript] == [
        ("user", "Book me in."),
        ("assistant", "Sure thing."),
    ]
    await eventually(lambda: conversation_log.append_turn.await_count == 2)

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "caller hung up"
    assert realtime.closed
    assert caller.closed
    conversation_log.complete.assert_awaited_once()
    assert conversation_log.complete.await_args.args[0] == "conv-1"


@pytest.mark.asyncio
async def test_agent_not_found_never_opens_ai_leg(make_bridge, caller, agent_repository, conversation_log):
    agent_repository.find_active_by_phone.return_value = None
    bridge = make_bridge()

    task = asyncio.create_task(bridge.run())
    caller.push(START_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "agent not found"
    assert make_bridge.created == []
    assert caller.closed
    conversation_log.open.assert_not_awaited()
    conversation_log.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_agent_lookup_failure_closes_call(make_bridge, caller, agent_repository):
    agent_repository.find_active_by_phone.side_effect = RuntimeError("lookup service down")
    bridge = make_bridge()

    task = asyncio.create_task(bridge.run())
    caller.push(START_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert bridge.session.close_reason == "agent not found"
    assert make_bridge.created == []


@pytest.mark.asyncio
async def test_stop_while_connecting_ai(make_bridge, caller):
    gate = asyncio.Event()
    client = FakeRealtimeClient(connect_gate=gate)
    bridge = make_bridge(client=client)

    task = asyncio.create_task(bridge.run())
    caller.push(START_FRAME)
    await eventually(lambda: client.connect_calls == 1)
    assert bridge.state is CallState.CONNECTING_AI

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert client.closed
    assert client.sent == []


@pytest.mark.asyncio
async def test_ai_connection_failure_closes_caller(make_bridge, caller, conversation_log):
    client = FakeRealtimeClient(connect_result=False)
    bridge = make_bridge(client=client)

    task = asyncio.create_task(bridge.run())
    caller.push(START_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "AI connection failed"
    assert caller.closed
    conversation_log.complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_ai_leg_closing_closes_caller(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    realtime.finish()
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "AI leg closed"
    assert caller.closed


@pytest.mark.asyncio
async def test_caller_disconnect_closes_ai_leg(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    caller.hang_up()
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "caller leg ended"
    assert realtime.closed


@pytest.mark.asyncio
async def test_no_greeting_sends_only_session_update(make_bridge, caller, realtime, agent_repository):
    agent_repository.find_active_by_phone.return_value = make_agent(greeting=None)
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    assert len(realtime.sent) == 1
    assert isinstance(realtime.sent[0], SessionUpdateEvent)

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_malformed_frames_and_early_media_are_ignored(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = asyncio.create_task(bridge.run())

    caller.push("not json at all")
    caller.push({"event": "dtmf", "dtmf": {"digit": "1"}})
    caller.push({"event": "connected", "protocol": "Call"})
    caller.push(media_frame())
    caller.push(START_FRAME)
    await eventually(lambda: bridge.state is CallState.ACTIVE)

    assert realtime.audio == []

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_second_start_is_ignored(make_bridge, caller, agent_repository):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    caller.push(START_FRAME)
    caller.push(media_frame())
    await eventually(lambda: len(bridge.session.realtime_client.audio) == 1)

    assert bridge.state is CallState.ACTIVE
    assert agent_repository.find_active_by_phone.await_count == 1

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_isolated_bad_audio_is_tolerated(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    for _ in range(5):
        caller.push(media_frame("!!!"))
    caller.push(media_frame("AAAA"))
    await eventually(lambda: len(realtime.audio) == 1)

    assert bridge.state is CallState.ACTIVE

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_persistent_bad_audio_closes_call(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    for _ in range(6):
        caller.push(media_frame("!!!"))
    await asyncio.wait_for(task, timeout=2)

    assert bridge.session.close_reason == "caller audio undecodable"
    assert realtime.audio == []
    assert realtime.closed


@pytest.mark.asyncio
async def test_speech_started_clears_caller_playback(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    realtime.push({"type": "input_audio_buffer.speech_started", "audio_start_ms": 120})
    await eventually(lambda: len(caller.sent_messages) == 1)

    assert caller.sent_messages[0] == {"event": "clear", "streamSid": "MZ123"}

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_unknown_function_still_resumes_conversation(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)
    setup_count = len(realtime.sent)

    realtime.push(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_7",
            "name": "transfer_call",
            "arguments": "{}",
        }
    )
    await eventually(lambda: len(realtime.sent) == setup_count + 2)

    output_event, trigger = realtime.sent[setup_count:]
    assert output_event.item.call_id == "call_7"
    assert json.loads(output_event.item.output) == {
        "success": False,
        "error": "Unknown function: transfer_call",
    }
    assert isinstance(trigger, ResponseCreateEvent)

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_tool_call_uses_scheduling_engine(make_bridge, caller, realtime, scheduling_engine):
    bridge = make_bridge(engine=scheduling_engine)
    task = await start_active_call(bridge, caller)
    setup_count = len(realtime.sent)

    realtime.push(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_8",
            "name": "get_next_available_slot",
            "arguments": '{"duration": 30}',
        }
    )
    await eventually(lambda: len(realtime.sent) == setup_count + 2)

    output = json.loads(realtime.sent[setup_count].item.output)
    assert output["success"] is True
    assert output["nextAvailable"]["formatted"] == "Wednesday, October 14 at 10:30 AM"
    assert isinstance(realtime.sent[setup_count + 1], ResponseCreateEvent)

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_slow_tool_call_times_out(make_bridge, caller, realtime):
    async def slow(*args, **kwargs):
        await asyncio.sleep(10)

    engine = AsyncMock()
    engine.get_next_available_slot.side_effect = slow
    bridge = make_bridge(engine=engine, tool_timeout=0.05)
    task = await start_active_call(bridge, caller)
    setup_count = len(realtime.sent)

    realtime.push(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_9",
            "name": "get_next_available_slot",
            "arguments": "{}",
        }
    )
    await eventually(lambda: len(realtime.sent) == setup_count + 2)

    output = json.loads(realtime.sent[setup_count].item.output)
    assert output["success"] is False
    assert isinstance(realtime.sent[setup_count + 1], ResponseCreateEvent)
    assert bridge.state is CallState.ACTIVE

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_caller_gone_during_audio_delta(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    caller.fail_sends = True
    realtime.push({"type": "response.audio.delta", "delta": "//8="})
    await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge.session.close_reason == "caller leg closed"
    assert caller.sent_messages == []
    assert realtime.closed


@pytest.mark.asyncio
async def test_events_after_close_are_discarded(make_bridge, caller, realtime):
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)
    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)

    await bridge._handle_ai_event(
        parse_server_event('{"type": "response.audio.delta", "delta": "//8="}')
    )
    await bridge.close("again")

    assert caller.sent_messages == []
    assert bridge.session.close_reason == "caller hung up"
    assert bridge.state is CallState.CLOSED


@pytest.mark.asyncio
async def test_conversation_log_failures_do_not_end_call(make_bridge, caller, realtime, conversation_log):
    conversation_log.open.side_effect = RuntimeError("database unavailable")
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    assert bridge.session.conversation_id is None

    realtime.push(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Hello?"}
    )
    await eventually(lambda: len(bridge.session.transcript) == 1)
    conversation_log.append_turn.assert_not_awaited()

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)
    conversation_log.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_transcript_persistence_failure_is_logged(make_bridge, caller, realtime, conversation_log):
    conversation_log.append_turn.side_effect = RuntimeError("write failed")
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    realtime.push(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Hello?"}
    )
    realtime.push({"type": "response.audio.delta", "delta": "//8="})
    await eventually(lambda: len(caller.sent_messages) == 1)

    assert bridge.state is CallState.ACTIVE

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_slow_transcript_write_does_not_delay_ai_audio(make_bridge, caller, realtime, conversation_log):
    written = []

    async def slow_append(conversation_id, turn):
        await asyncio.sleep(0.5)
        written.append(turn.text)

    conversation_log.append_turn.side_effect = slow_append
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    realtime.push(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Book me in."}
    )
    realtime.push({"type": "response.audio.delta", "delta": "//8="})
    await eventually(lambda: len(caller.sent_messages) == 1, timeout=0.2)
    assert written == []

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)

    # Teardown waits for the pending write before completing the conversation
    assert written == ["Book me in."]
    conversation_log.complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_transcript_turns_are_written_in_order_before_completion(
    make_bridge, caller, realtime, conversation_log
):
    calls = []

    async def append(conversation_id, turn):
        await asyncio.sleep(0.05 if turn.role == "user" else 0)
        calls.append(turn.text)

    async def complete(conversation_id, ended_at):
        calls.append("complete")

    conversation_log.append_turn.side_effect = append
    conversation_log.complete.side_effect = complete
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    transcription = "conversation.item.input_audio_transcription.completed"
    realtime.push({"type": transcription, "transcript": "One"})
    realtime.push(
        {
            "type": "response.done",
            "response": {"output": [{"content": [{"type": "audio", "transcript": "Two"}]}]},
        }
    )
    realtime.push({"type": transcription, "transcript": "Three"})
    await eventually(lambda: len(bridge.session.transcript) == 3)

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)

    assert calls == ["One", "Two", "Three", "complete"]


@pytest.mark.asyncio
async def test_stuck_transcript_write_does_not_block_teardown(make_bridge, caller, realtime, conversation_log):
    async def stuck(conversation_id, turn):
        await asyncio.Event().wait()

    conversation_log.append_turn.side_effect = stuck
    bridge = make_bridge()
    task = await start_active_call(bridge, caller)

    realtime.push(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Hello?"}
    )
    await eventually(lambda: conversation_log.append_turn.call_count == 1)

    with patch("voice_bridge.bot.call_session_bridge.TRANSCRIPT_DRAIN_TIMEOUT_SECONDS", 0.05):
        caller.push(STOP_FRAME)
        await asyncio.wait_for(task, timeout=2)

    assert bridge.state is CallState.CLOSED
    assert bridge._transcript_task.done()
    conversation_log.complete.assert_awaited_once()


@pytest.mark.asyncio
async def test_timed_out_booking_is_not_cancelled(make_bridge, caller, realtime):
    booked = asyncio.Event()

    async def slow_booking(agency_id, start, duration, **kwargs):
        await asyncio.sleep(0.2)
        booked.set()
        begins = datetime(2026, 10, 15, 14, 0, tzinfo=timezone.utc)
        return BookingResult("evt-1", begins, begins + timedelta(minutes=duration), "Booked")

    engine = AsyncMock()
    engine.book_appointment.side_effect = slow_booking
    bridge = make_bridge(engine=engine, tool_timeout=0.05)
    task = await start_active_call(bridge, caller)
    setup_count = len(realtime.sent)

    realtime.push(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_10",
            "name": "book_appointment",
            "arguments": '{"dateTime": "2026-10-15T14:00:00Z"}',
        }
    )
    await eventually(lambda: len(realtime.sent) == setup_count + 2)

    output = json.loads(realtime.sent[setup_count].item.output)
    assert output["success"] is False
    assert output["pending"] is True
    assert "Do not book this time again" in output["message"]

    # The write carries on after the model has been answered
    await asyncio.wait_for(booked.wait(), timeout=1)
    engine.book_appointment.assert_awaited_once()

    caller.push(STOP_FRAME)
    await asyncio.wait_for(task, timeout=2)


def test_illegal_transition_is_rejected(make_bridge):
    bridge = make_bridge()

    with pytest.raises(BridgeStateError):
        bridge._set_state(CallState.ACTIVE)
    assert bridge.state is CallState.IDLE
