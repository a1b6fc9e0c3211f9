"""
Audio frame codec between the telephony wire format and the Realtime API.

Twilio Media Streams carry base64-wrapped 8 kHz G.711 mu-law frames. The
Realtime API accepts either the same mu-law payload or 24 kHz 16-bit PCM,
whichever was declared in ``session.update``. One codec instance serves one
session and always uses the same format in both directions.

With ``pcm16`` the codec is a streaming converter: rate conversion state and
the anti-alias filter history carry over from one frame to the next, so a call
converts as one continuous signal rather than as unrelated 20 ms pieces.
"""

import audioop  # provided by the audioop-lts distribution on Python 3.13+
import base64
import binascii
import logging
from enum import Enum
from typing import Tuple

import numpy as np

from voice_bridge.config.constants import (
    AUDIO_FORMAT_G711_ULAW,
    AUDIO_FORMAT_PCM16,
    LOGGER_NAME,
    REALTIME_PCM16_SAMPLE_RATE,
    TELEPHONY_SAMPLE_RATE,
)

logger = logging.getLogger(LOGGER_NAME)

# 16-bit mono linear PCM
SAMPLE_WIDTH = 2
CHANNELS = 1

# Low-pass applied before 24 kHz -> 8 kHz; the stopband starts below 4.3 kHz
ANTI_ALIAS_NUM_TAPS = 63
ANTI_ALIAS_CUTOFF_HZ = 3600


class AudioFormat(str, Enum):
    """Audio formats the bridge can declare to the Realtime API."""

    G711_ULAW = AUDIO_FORMAT_G711_ULAW
    PCM16 = AUDIO_FORMAT_PCM16


class AudioDecodeError(ValueError):
    """Raised when a frame is not valid base64 audio."""


def lowpass_taps(num_taps: int, cutoff_hz: float, sample_rate: int) -> np.ndarray:
    """Hamming-windowed sinc low-pass filter with unity gain at DC."""
    n = np.arange(num_taps) - (num_taps - 1) / 2
    taps = np.sinc(2 * cutoff_hz / sample_rate * n) * np.hamming(num_taps)
    return taps / taps.sum()


class AntiAliasFilter:
    """
    Streaming FIR low-pass over 16-bit PCM.

    The last ``len(taps) - 1`` input samples of each chunk are kept and
    prepended to the next, so chunked filtering matches filtering the whole
    signal at once.
    """

    def __init__(self, taps: np.ndarray):
        self.taps = taps
        self._history = np.zeros(len(taps) - 1)

    def process(self, pcm: bytes) -> bytes:
        samples = np.frombuffer(pcm, dtype="<i2").astype(np.float64)
        padded = np.concatenate([self._history, samples])
        self._history = padded[len(padded) - len(self._history):]
        filtered = np.convolve(padded, self.taps, mode="valid")
        return np.clip(np.round(filtered), -32768, 32767).astype("<i2").tobytes()


def _b64decode(payload: str) -> bytes:
    if not isinstance(payload, str) or not payload:
        raise AudioDecodeError("empty audio payload")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"invalid base64 audio payload: {e}") from e
    if not data:
        raise AudioDecodeError("empty audio payload")
    return data


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class AudioFrameCodec:
    """
    Converts audio frames between the caller leg and the AI leg.

    ``decode`` handles caller -> AI, ``encode`` handles AI -> caller. With
    ``g711_ulaw`` the payload is validated and passed through unchanged; with
    ``pcm16`` it is transcoded with ``audioop`` and resampled between 8 kHz and
    24 kHz, carrying ``ratecv`` state in each direction.
    """

    def __init__(self, ai_format: AudioFormat = AudioFormat.G711_ULAW):
        self.ai_format = AudioFormat(ai_format)
        self._upsample_state = None
        self._downsample_state = None
        self._anti_alias = AntiAliasFilter(
            lowpass_taps(ANTI_ALIAS_NUM_TAPS, ANTI_ALIAS_CUTOFF_HZ, REALTIME_PCM16_SAMPLE_RATE)
        )

    def session_formats(self) -> Tuple[str, str]:
        """The (input, output) audio formats to declare in session.update."""
        return self.ai_format.value, self.ai_format.value

    def decode(self, wire_payload: str) -> str:
        """Caller media payload -> base64 audio for input_audio_buffer.append."""
        ulaw = _b64decode(wire_payload)
        if self.ai_format is AudioFormat.G711_ULAW:
            return wire_payload
        pcm = audioop.ulaw2lin(ulaw, SAMPLE_WIDTH)
        wideband, self._upsample_state = audioop.ratecv(
            pcm,
            SAMPLE_WIDTH,
            CHANNELS,
            TELEPHONY_SAMPLE_RATE,
            REALTIME_PCM16_SAMPLE_RATE,
            self._upsample_state,
        )
        return _b64encode(wideband)

    def encode(self, ai_payload: str) -> str:
        """Realtime audio delta -> caller media payload."""
        data = _b64decode(ai_payload)
        if self.ai_format is AudioFormat.G711_ULAW:
            return ai_payload
        if len(data) % 2:
            # A delta split mid-sample; drop the dangling byte
            logger.debug("Dropping trailing odd byte from pcm16 delta")
            data = data[:-1]
            if not data:
                raise AudioDecodeError("pcm16 delta shorter than one sample")
        filtered = self._anti_alias.process(data)
        narrowband, self._downsample_state = audioop.ratecv(
            filtered,
            SAMPLE_WIDTH,
            CHANNELS,
            REALTIME_PCM16_SAMPLE_RATE,
            TELEPHONY_SAMPLE_RATE,
            self._downsample_state,
        )
        return _b64encode(audioop.lin2ulaw(narrowband, SAMPLE_WIDTH))
