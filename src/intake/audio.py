"""
Audio conversion utilities for the intake voice agent.

- Twilio mu-law 8kHz is sent directly to Deepgram (no conversion)
- Cartesia outputs mu-law 8kHz directly
- OpenAI speech returns PCM16 24kHz, resampled and encoded to mu-law here
"""

import audioop
from typing import Generator

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """Resample mono PCM16 between sample rates."""
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    # Drop a trailing odd byte so audioop sees whole samples.
    if len(pcm_bytes) % 2:
        pcm_bytes = pcm_bytes[:-1]
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, source_rate, target_rate, None)
    return converted


def pcm16_to_twilio_ulaw(pcm_bytes: bytes, source_rate: int) -> bytes:
    """Convert mono PCM16 at any rate into Twilio-ready 8kHz mu-law."""
    return linear16_to_ulaw(resample_pcm16(pcm_bytes, source_rate, TWILIO_SAMPLE_RATE))


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(ulaw_bytes: bytes) -> float:
    """Duration of 8kHz mu-law audio in milliseconds."""
    return len(ulaw_bytes) / (TWILIO_SAMPLE_RATE / 1000)
