"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for protocol names and fixed values so the caller leg,
the AI leg and the scheduling tools stay consistent with each other.
"""

# Logger name used throughout the application
LOGGER_NAME = "voice_bridge"

# OpenAI Realtime API defaults
DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview"
DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime"
DEFAULT_VOICE = "alloy"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_TEMPERATURE = 0.8
DEFAULT_MAX_RESPONSE_OUTPUT_TOKENS = 4096

# Server-side voice activity detection
TURN_DETECTION = {
    "type": "server_vad",
    "threshold": 0.5,
    "prefix_padding_ms": 300,
    "silence_duration_ms": 500,
}

# Audio format constants (names as declared in session.update)
AUDIO_FORMAT_G711_ULAW = "g711_ulaw"
AUDIO_FORMAT_PCM16 = "pcm16"

# Sample rates on each leg
TELEPHONY_SAMPLE_RATE = 8000
REALTIME_PCM16_SAMPLE_RATE = 24000

# Consecutive undecodable caller frames tolerated before the call is torn down
MAX_CONSECUTIVE_DECODE_FAILURES = 5

# Tool round-trip bound (seconds)
DEFAULT_TOOL_TIMEOUT_SECONDS = 15.0

# Seconds teardown waits for queued transcript turns to be written
TRANSCRIPT_DRAIN_TIMEOUT_SECONDS = 5.0

# Scheduling
BUSINESS_DAY_START_HOUR = 9
BUSINESS_DAY_END_HOUR = 17
SLOT_GRANULARITY_MINUTES = 30
DEFAULT_APPOINTMENT_MINUTES = 30
DEFAULT_DAYS_TO_SEARCH = 7
MAX_DAYS_TO_SEARCH = 30
MAX_ALTERNATIVE_SLOTS = 3
DEFAULT_APPOINTMENT_TITLE = "Phone Appointment"
