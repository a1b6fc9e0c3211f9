"""
Bot module connecting phone calls to the OpenAI Realtime API.

Key components:
- RealtimeSessionClient: One WebSocket connection to the Realtime API per call,
  sending typed client events and yielding typed server events.
- CallSessionBridge: Per-call state machine that relays audio both ways, records
  transcripts and answers tool calls.
- ToolDispatcher: Runs the scheduling tools the model invokes during a call.

Usage examples:
```python
from voice_bridge.bot import CallSessionBridge

bridge = CallSessionBridge(
    websocket,
    configurator=configurator,
    conversation_log=conversation_log,
    scheduling_engine=scheduling_engine,
    client_factory=lambda: RealtimeSessionClient(api_key, model),
    codec=AudioFrameCodec(),
)
await bridge.run()
```
"""

from voice_bridge.bot.call_session_bridge import BridgeStateError, CallSessionBridge
from voice_bridge.bot.realtime_api import RealtimeSessionClient
from voice_bridge.bot.tools import ToolDispatcher, ToolInvocation

__all__ = [
    "BridgeStateError",
    "CallSessionBridge",
    "RealtimeSessionClient",
    "ToolDispatcher",
    "ToolInvocation",
]
