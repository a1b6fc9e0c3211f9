"""
State carried by one phone call while it is bridged to the Realtime API.

A ``CallSession`` is created by the bridge when the caller socket is accepted and
discarded once both legs are closed. ``AgentProfile`` is the read-only snapshot of
the agent answering the called number, resolved once per call.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from voice_bridge.bot.realtime_api import RealtimeSessionClient


class CallState(str, Enum):
    """Lifecycle of a bridged call."""

    IDLE = "idle"
    RESOLVING = "resolving"
    CONNECTING_AI = "connecting_ai"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


# Legal transitions; anything else is a bug in the bridge
ALLOWED_TRANSITIONS = {
    CallState.IDLE: {CallState.RESOLVING, CallState.CLOSING},
    CallState.RESOLVING: {CallState.CONNECTING_AI, CallState.CLOSING},
    CallState.CONNECTING_AI: {CallState.ACTIVE, CallState.CLOSING},
    CallState.ACTIVE: {CallState.CLOSING},
    CallState.CLOSING: {CallState.CLOSED},
    CallState.CLOSED: set(),
}


class AgentProfile(BaseModel):
    """Immutable view of the AI agent bound to a called number."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    agency_id: str
    name: str
    voice: str
    language: str = "en"
    instructions: str
    greeting: Optional[str] = None
    tools: Tuple[Dict[str, Any], ...] = ()
    knowledge_document_count: int = 0


class TranscriptTurn(BaseModel):
    """One finished utterance appended to the conversation log."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallSession:
    """Mutable per-call state owned by a single ``CallSessionBridge``."""

    def __init__(self):
        self.call_id: Optional[str] = None
        self.stream_id: Optional[str] = None
        self.caller_phone: Optional[str] = None
        self.called_phone: Optional[str] = None
        self.agent: Optional[AgentProfile] = None
        self.conversation_id: Optional[str] = None
        self.state: CallState = CallState.IDLE
        self.close_reason: Optional[str] = None
        self.realtime_client: Optional["RealtimeSessionClient"] = None
        self.transcript: List[TranscriptTurn] = []

    def __repr__(self) -> str:
        return (
            f"CallSession(call_id={self.call_id!r}, stream_id={self.stream_id!r}, "
            f"state={self.state.value})"
        )
