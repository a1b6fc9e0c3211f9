"""
WebSocket connection manager for Twilio media streams.

Every connection on the media-stream endpoint is one phone call. The manager
accepts the socket, wires a ``CallSessionBridge`` to the shared stores built
from ``Settings``, runs it until the call ends, and keeps track of the calls
currently in progress.
"""

import logging
import socket
from typing import Dict

from fastapi import WebSocket
from sqlalchemy.ext.asyncio import async_sessionmaker

from voice_bridge.audio.codec import AudioFormat, AudioFrameCodec
from voice_bridge.bot.call_session_bridge import CallSessionBridge
from voice_bridge.bot.realtime_api import RealtimeSessionClient
from voice_bridge.config.constants import LOGGER_NAME
from voice_bridge.config.settings import Settings
from voice_bridge.services.agent_configurator import AgentSessionConfigurator
from voice_bridge.services.persistence.agents import AgentRepository
from voice_bridge.services.persistence.calendar import CalendarStore
from voice_bridge.services.persistence.conversations import ConversationLog
from voice_bridge.services.scheduling import SchedulingEngine

logger = logging.getLogger(LOGGER_NAME)


class WebSocketManager:
    """Accepts caller connections and runs one bridge per call."""

    def __init__(self, settings: Settings, session_factory: async_sessionmaker):
        self.settings = settings
        self.audio_format = AudioFormat(settings.audio_format)
        # Declares the session formats; each call converts audio with its own codec
        self.codec = AudioFrameCodec(self.audio_format)
        self.configurator = AgentSessionConfigurator(AgentRepository(session_factory), self.codec)
        self.conversation_log = ConversationLog(session_factory)
        self.scheduling_engine = SchedulingEngine(
            CalendarStore(session_factory), timezone_name=settings.business_timezone
        )
        self.active_bridges: Dict[int, CallSessionBridge] = {}

    @property
    def active_calls(self) -> int:
        return len(self.active_bridges)

    def create_realtime_client(self) -> RealtimeSessionClient:
        return RealtimeSessionClient(
            self.settings.openai_api_key,
            self.settings.realtime_model,
            url=self.settings.realtime_url,
        )

    def create_bridge(self, websocket: WebSocket) -> CallSessionBridge:
        return CallSessionBridge(
            websocket,
            configurator=self.configurator,
            conversation_log=self.conversation_log,
            scheduling_engine=self.scheduling_engine,
            client_factory=self.create_realtime_client,
            codec=AudioFrameCodec(self.audio_format),
            tool_timeout=self.settings.tool_timeout_seconds,
        )

    async def _optimize_socket(self, websocket: WebSocket) -> None:
        """
        Disable Nagle's algorithm on the caller socket so audio frames go out immediately.

        Args:
            websocket: The FastAPI WebSocket connection
        """
        try:
            client = websocket.client
            if hasattr(client, "sock") and client.sock is not None:
                client.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                logger.info("Optimized socket: TCP_NODELAY enabled for low latency")
        except OSError as e:
            logger.warning(f"Could not optimize socket: {e}")

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Handle one caller WebSocket for the whole call.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        Calls are refused (socket closed with 1011) when no OpenAI API key is
        configured, since the AI leg could never be opened.
        """
        await websocket.accept()
        await self._optimize_socket(websocket)

        if not self.settings.openai_api_key:
            logger.error("OPENAI_API_KEY not set; refusing call")
            await websocket.close(code=1011)
            return

        bridge = self.create_bridge(websocket)
        key = id(bridge)
        self.active_bridges[key] = bridge
        logger.info(f"Media stream connected ({self.active_calls} active calls)")

        try:
            await bridge.run()
        finally:
            self.active_bridges.pop(key, None)
            logger.info(
                f"Media stream finished: {bridge.session.close_reason} "
                f"({self.active_calls} active calls)"
            )
