import asyncio
import logging
import time
from typing import AsyncIterator

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK
from pydantic import BaseModel

from voice_bridge.config.constants import DEFAULT_REALTIME_URL, LOGGER_NAME
from voice_bridge.models.errors import MessageDecodeError
from voice_bridge.models.openai_schemas import (
    InputAudioBufferAppendEvent,
    ServerEvent,
    parse_server_event,
)

logger = logging.getLogger(LOGGER_NAME)

CONNECTION_TIMEOUT = 15  # seconds
SEND_TIMEOUT = 5  # seconds

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_PING_INTERVAL = 5  # seconds between pings
WS_PING_TIMEOUT = 10


class RealtimeSessionClient:
    """
    One upstream connection to the OpenAI Realtime API for one call.

    The connection is opened once and never reopened: a voice call cannot be
    resumed mid-conversation, so once it drops or is closed the client is done.
    """

    def __init__(self, api_key: str, model: str, url: str = DEFAULT_REALTIME_URL):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.ws = None
        self._connection_active = False
        self._is_closing = False
        logger.info(f"RealtimeSessionClient initialized with model: {model}")

    @property
    def is_open(self) -> bool:
        return self._connection_active and not self._is_closing

    async def connect(self) -> bool:
        """
        Connect to the OpenAI Realtime WebSocket endpoint.

        Returns:
            bool: True if connection was successful, False otherwise
        """
        if self._is_closing:
            logger.warning("Cannot connect - client is closing")
            return False
        if self.ws is not None:
            logger.warning("Cannot connect - client already holds a connection")
            return False

        url = f"{self.url}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            logger.info(f"Connecting to OpenAI Realtime API with model: {self.model}")
            connection_start = time.time()
            ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                    compression=None,  # Disable compression for lower latency
                    additional_headers=headers,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.error(f"Timeout while connecting to OpenAI Realtime API (after {CONNECTION_TIMEOUT}s)")
            return False
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Failed to connect to OpenAI Realtime API: {e}")
            return False

        if self._is_closing:
            # close() ran while the handshake was in flight
            await ws.close()
            return False

        self.ws = ws
        self._connection_active = True
        logger.info(
            f"Connected to OpenAI Realtime API in {time.time() - connection_start:.2f} seconds"
        )
        return True

    async def send_event(self, event: BaseModel) -> bool:
        """
        Send one client event.

        Returns:
            bool: True if the event was sent, False otherwise
        """
        if not self.is_open or self.ws is None:
            logger.debug(f"Cannot send {getattr(event, 'type', 'event')} - connection not active")
            return False

        try:
            await asyncio.wait_for(self.ws.send(event.model_dump_json()), timeout=SEND_TIMEOUT)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Timeout while sending {getattr(event, 'type', 'event')}")
            return False
        except ConnectionClosedOK:
            logger.info("Connection closed normally while sending")
            self._connection_active = False
            return False
        except ConnectionClosedError as e:
            logger.warning(f"Connection closed while sending: {e}")
            self._connection_active = False
            return False

    async def append_audio(self, audio: str) -> bool:
        """Append base64 audio to the input buffer."""
        return await self.send_event(InputAudioBufferAppendEvent(audio=audio))

    async def events(self) -> AsyncIterator[ServerEvent]:
        """
        Yield typed server events until the connection closes.

        Malformed frames are logged and skipped. An abnormal close raises
        ``ConnectionClosedError`` to the caller; a normal close ends iteration.
        """
        if self.ws is None:
            return

        try:
            async for message in self.ws:
                try:
                    event = parse_server_event(message)
                except MessageDecodeError as e:
                    logger.warning(f"Dropping malformed realtime message: {e}")
                    continue
                yield event
        except ConnectionClosedOK:
            logger.info("Realtime WebSocket closed normally")
        finally:
            self._connection_active = False

    async def close(self) -> None:
        """Close the WebSocket connection. The client cannot be reused."""
        if self._is_closing:
            return
        logger.info("Closing OpenAI Realtime client")
        self._is_closing = True
        self._connection_active = False

        if self.ws is not None:
            try:
                await self.ws.close()
            except ConnectionClosed:
                pass
            except OSError as e:
                logger.warning(f"Error closing realtime WebSocket: {e}")
