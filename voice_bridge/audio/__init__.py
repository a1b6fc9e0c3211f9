"""Audio conversion between the caller leg and the Realtime API."""

from voice_bridge.audio.codec import AudioDecodeError, AudioFormat, AudioFrameCodec

__all__ = ["AudioDecodeError", "AudioFormat", "AudioFrameCodec"]
