"""
Pydantic models for the caller leg (Twilio Media Streams WebSocket protocol).

Inbound frames are JSON text keyed by an ``event`` field. Each event name maps to
one model; anything else is a decode error that the bridge logs and skips.
"""

import json
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from voice_bridge.models.errors import MessageDecodeError


class CallerMessage(BaseModel):
    """Base model for all caller-leg frames."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event: str = Field(..., description="Event name")
    sequenceNumber: Optional[str] = None


class ConnectedMessage(CallerMessage):
    """First frame after the socket opens."""

    event: Literal["connected"]
    protocol: Optional[str] = None
    version: Optional[str] = None


class MediaFormat(BaseModel):
    encoding: str = "audio/x-mulaw"
    sampleRate: int = 8000
    channels: int = 1


class StartPayload(BaseModel):
    """Metadata carried by the ``start`` event."""

    model_config = ConfigDict(extra="ignore")

    callSid: str
    streamSid: str
    accountSid: Optional[str] = None
    tracks: List[str] = Field(default_factory=list)
    customParameters: Dict[str, str] = Field(default_factory=dict)
    mediaFormat: Optional[MediaFormat] = None

    def _param(self, *names: str) -> Optional[str]:
        for name in names:
            value = self.customParameters.get(name)
            if value:
                return value
        return None

    @property
    def from_number(self) -> Optional[str]:
        return self._param("from", "From")

    @property
    def to_number(self) -> Optional[str]:
        return self._param("to", "To")


class StartMessage(CallerMessage):
    """Call/stream identifiers and routing parameters; opens the session."""

    event: Literal["start"]
    streamSid: Optional[str] = None
    start: StartPayload


class MediaPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payload: str = Field(..., description="Base64 mu-law audio")
    track: Optional[str] = None
    chunk: Optional[str] = None
    timestamp: Optional[str] = None


class MediaMessage(CallerMessage):
    """One frame of caller audio."""

    event: Literal["media"]
    streamSid: Optional[str] = None
    media: MediaPayload


class MarkPayload(BaseModel):
    name: str


class MarkMessage(CallerMessage):
    """Playback acknowledgement for a previously sent mark."""

    event: Literal["mark"]
    streamSid: Optional[str] = None
    mark: MarkPayload


class StopMessage(CallerMessage):
    """The caller hung up or the stream was stopped."""

    event: Literal["stop"]
    streamSid: Optional[str] = None


IncomingCallerMessage = Annotated[
    Union[ConnectedMessage, StartMessage, MediaMessage, MarkMessage, StopMessage],
    Field(discriminator="event"),
]

_incoming_caller_message = TypeAdapter(IncomingCallerMessage)


class OutgoingMediaPayload(BaseModel):
    payload: str


class OutgoingMediaMessage(BaseModel):
    """Audio to play to the caller, addressed by stream id."""

    event: Literal["media"] = "media"
    streamSid: str
    media: OutgoingMediaPayload


class ClearMessage(BaseModel):
    """Discard audio already queued for playback on the caller leg."""

    event: Literal["clear"] = "clear"
    streamSid: str


def parse_caller_message(raw: str) -> IncomingCallerMessage:
    """
    Parse one caller-leg text frame into its typed model.

    Raises:
        MessageDecodeError: On invalid JSON, unknown events or schema violations.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"caller frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MessageDecodeError("caller frame is not a JSON object")

    try:
        return _incoming_caller_message.validate_python(data)
    except ValidationError as e:
        raise MessageDecodeError(f"invalid caller frame {data.get('event')!r}: {e}") from e
