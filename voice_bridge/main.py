"""
FastAPI server bridging Twilio phone calls to the OpenAI Realtime API.

Twilio opens a media-stream WebSocket per call on ``/media-stream``; each one
is handed to the ``WebSocketManager``, which runs a call session bridge until
the call ends. ``/health`` and ``/`` report service status.
"""

from contextlib import asynccontextmanager
from pathlib import Path

import dotenv
from fastapi import FastAPI, WebSocket

from voice_bridge.config.logging_config import configure_logging
from voice_bridge.config.settings import Settings
from voice_bridge.db.database import create_engine_from_url, create_session_factory, init_db
from voice_bridge.websocket_manager import WebSocketManager

# Load environment variables from .env file if it exists
env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)

settings = Settings.from_env()

# Configure logging
logger = configure_logging(settings.log_level)

engine = create_engine_from_url(settings.database_url)
session_factory = create_session_factory(engine)

# Create WebSocket manager
websocket_manager = WebSocketManager(settings, session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; calls will be refused")
    await init_db(engine)
    logger.info(
        f"Voice bridge ready: model={settings.realtime_model}, "
        f"audio={settings.audio_format}, timezone={settings.business_timezone}"
    )
    yield
    await engine.dispose()


# Create FastAPI application
app = FastAPI(
    title="Voice Bridge",
    description="Bridges Twilio media streams to the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket):
    """WebSocket endpoint for Twilio Media Streams; one connection per call."""
    await websocket_manager.handle_websocket(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Service status, whether an OpenAI key is configured and the
        number of calls currently bridged.
    """
    return {
        "status": "healthy",
        "openai_api_key_configured": bool(settings.openai_api_key),
        "active_calls": websocket_manager.active_calls,
    }


@app.get("/")
async def root():
    """Basic information about the service."""
    return {
        "name": "Voice Bridge",
        "description": "Bridges Twilio media streams to the OpenAI Realtime API",
        "version": "1.0.0",
        "endpoints": {
            "/media-stream": "WebSocket endpoint for Twilio Media Streams",
            "/health": "Health check endpoint",
        },
    }
