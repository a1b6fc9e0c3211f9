"""
Models module for protocol messages and per-call state.

Key components:
- twilio_schemas: Pydantic models for the Twilio Media Streams frames on the
  caller leg, inbound (connected, start, media, mark, stop) and outbound
  (media, clear).
- openai_schemas: Pydantic models for the Realtime API client events the bridge
  sends and the server events it acts on.
- call_session: Call lifecycle states, the resolved agent profile, transcript
  turns and the mutable per-call session.
- errors: Decode errors raised by both protocol parsers.
"""

from voice_bridge.models.call_session import (
    AgentProfile,
    CallSession,
    CallState,
    TranscriptTurn,
)
from voice_bridge.models.errors import MessageDecodeError
