"""
Voice Bridge - Twilio media streams to OpenAI Realtime API

Answers phone calls with an AI voice agent. Each Twilio media-stream WebSocket
is bridged to its own OpenAI Realtime session configured for the agent that
owns the called number, with the agent's knowledge base in its instructions
and scheduling tools backed by the agency calendar.

Key Components:
- audio: Frame codec between telephony mu-law and the Realtime audio format
- bot: Call session bridge, Realtime API client and tool dispatcher
- config: Settings, constants and logging setup
- db: SQLAlchemy models and async engine helpers
- models: Protocol models for both legs and per-call state
- services: Agent configuration, scheduling and persistence
- websocket_manager: Accepts caller sockets and runs one bridge per call

Getting Started:
1. Set up environment variables (or a .env file):
   - OPENAI_API_KEY: Your OpenAI API key
   - DATABASE_URL: Agent/calendar database (default sqlite:///./voice_bridge.db)
   - AUDIO_FORMAT: g711_ulaw (default) or pcm16
   - BUSINESS_TIMEZONE: Timezone of the 09:00-17:00 booking window (default UTC)

2. Start the server:
   ```bash
   python run.py
   ```

3. Point the Twilio number's <Stream> at wss://your-server/media-stream
"""
