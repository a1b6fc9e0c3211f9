"""
Pydantic models for OpenAI Realtime API message structures.

This module provides type-safe models for the events exchanged with the Realtime API:
client events the bridge sends, and the server events it acts on. Server events that
the bridge does not act on are parsed into a generic model so they can still be logged.
"""

import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voice_bridge.models.errors import MessageDecodeError


class MessageRole(str, Enum):
    """Role of a participant in a conversation."""
    USER = "user"
    ASSISTANT = "assistant"


class ServerEventType(str, Enum):
    ERROR = "error"
    INPUT_AUDIO_BUFFER_SPEECH_STARTED = "input_audio_buffer.speech_started"
    INPUT_AUDIO_TRANSCRIPTION_COMPLETED = (
        "conversation.item.input_audio_transcription.completed"
    )
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_DONE = "response.done"
    RESPONSE_FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"


# Client events


class RealtimeBaseMessage(BaseModel):
    """Base model for Realtime API messages."""
    type: str


class SessionConfig(BaseModel):
    """The ``session`` object of a session.update event."""
    modalities: List[str] = Field(default_factory=lambda: ["text", "audio"])
    voice: str
    instructions: str
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    tool_choice: str = "auto"
    input_audio_format: str
    output_audio_format: str
    input_audio_transcription: Optional[Dict[str, Any]] = None
    turn_detection: Optional[Dict[str, Any]] = None
    temperature: float = 0.8
    max_response_output_tokens: int = 4096


class SessionUpdateEvent(RealtimeBaseMessage):
    type: Literal["session.update"] = "session.update"
    session: SessionConfig


class InputAudioBufferAppendEvent(RealtimeBaseMessage):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str


class ConversationItemContentParam(BaseModel):
    type: str = "input_text"
    text: str


class MessageItem(BaseModel):
    type: Literal["message"] = "message"
    role: MessageRole
    content: List[ConversationItemContentParam]


class FunctionCallOutputItem(BaseModel):
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: str


class ConversationItemCreateEvent(RealtimeBaseMessage):
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: Union[MessageItem, FunctionCallOutputItem]


class ResponseCreateEvent(RealtimeBaseMessage):
    type: Literal["response.create"] = "response.create"


ClientEvent = Union[
    SessionUpdateEvent,
    InputAudioBufferAppendEvent,
    ConversationItemCreateEvent,
    ResponseCreateEvent,
]


# Server events


class ServerEvent(RealtimeBaseMessage):
    """Base for server events; unknown fields are kept for logging."""
    model_config = ConfigDict(extra="allow")

    event_id: Optional[str] = None


class GenericServerEvent(ServerEvent):
    """Any server event type the bridge does not act on."""


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None


class ErrorEvent(ServerEvent):
    type: Literal["error"]
    error: ErrorDetail = Field(default_factory=ErrorDetail)


class SpeechStartedEvent(ServerEvent):
    type: Literal["input_audio_buffer.speech_started"]
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


class InputAudioTranscriptionCompletedEvent(ServerEvent):
    type: Literal["conversation.item.input_audio_transcription.completed"]
    item_id: Optional[str] = None
    transcript: str = ""


class ResponseAudioDeltaEvent(ServerEvent):
    type: Literal["response.audio.delta"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    delta: str


class ResponseContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    transcript: Optional[str] = None
    text: Optional[str] = None


class ResponseOutputItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Optional[str] = None
    role: Optional[str] = None
    content: List[ResponseContentPart] = Field(default_factory=list)


class ResponsePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    status: Optional[str] = None
    output: List[ResponseOutputItem] = Field(default_factory=list)


class ResponseDoneEvent(ServerEvent):
    type: Literal["response.done"]
    response: ResponsePayload = Field(default_factory=ResponsePayload)

    def assistant_transcript(self) -> Optional[str]:
        """Transcript of the first content part that carries one, if any."""
        for item in self.response.output:
            for part in item.content:
                if part.transcript:
                    return part.transcript
        return None


class FunctionCallArgumentsDoneEvent(ServerEvent):
    type: Literal["response.function_call_arguments.done"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    call_id: str
    name: str
    arguments: str = "{}"


# Event types the bridge acts on; every other type parses as GenericServerEvent
SERVER_EVENT_MODELS = {
    ServerEventType.ERROR.value: ErrorEvent,
    ServerEventType.INPUT_AUDIO_BUFFER_SPEECH_STARTED.value: SpeechStartedEvent,
    ServerEventType.INPUT_AUDIO_TRANSCRIPTION_COMPLETED.value: InputAudioTranscriptionCompletedEvent,
    ServerEventType.RESPONSE_AUDIO_DELTA.value: ResponseAudioDeltaEvent,
    ServerEventType.RESPONSE_DONE.value: ResponseDoneEvent,
    ServerEventType.RESPONSE_FUNCTION_CALL_ARGUMENTS_DONE.value: FunctionCallArgumentsDoneEvent,
}


def parse_server_event(raw: Union[str, bytes]) -> ServerEvent:
    """
    Parse one Realtime API text frame into its typed event.

    Raises:
        MessageDecodeError: On invalid JSON, a missing type, or a known type whose
            payload does not match its schema.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"realtime frame is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MessageDecodeError("realtime frame has no event type")

    model = SERVER_EVENT_MODELS.get(data["type"], GenericServerEvent)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MessageDecodeError(f"invalid {data['type']} event: {e}") from e
