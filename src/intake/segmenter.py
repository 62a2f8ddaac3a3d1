"""
Silence-based utterance segmentation.

Every inbound audio frame rearms a single-shot debounce timer. When the timer
survives a full window without new frames, whatever the transcriber has put in
the session's speech buffer becomes a finalized utterance.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from src.intake.models import Session

logger = structlog.get_logger(__name__)

DEFAULT_DEBOUNCE_MS = 800
DEFAULT_MIN_SPEECH_LENGTH = 3


class UtteranceSegmenter:
    """Turns a frame stream into utterance boundaries for one session."""

    def __init__(
        self,
        session: Session,
        on_utterance: Callable[[str], Awaitable[None]],
        send_audio: Callable[[bytes], Awaitable[None]],
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        min_speech_length: int = DEFAULT_MIN_SPEECH_LENGTH,
    ):
        self.session = session
        self._on_utterance = on_utterance
        self._send_audio = send_audio
        self._debounce_s = debounce_ms / 1000.0
        self._min_speech_length = min_speech_length
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def timer_pending(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def on_frame(self, payload: bytes) -> None:
        """Rearm the silence timer and forward the frame to the transcriber."""
        if not isinstance(payload, (bytes, bytearray)) or not payload:
            logger.warning(
                "Dropping malformed audio frame",
                stream_sid=self.session.stream_sid,
                payload_type=type(payload).__name__,
            )
            return

        self.session.last_speech_at = time.monotonic()
        # Cancel and rearm without yielding to the loop in between.
        self._rearm()

        try:
            await self._send_audio(bytes(payload))
        except Exception as e:
            logger.error("Failed to forward audio frame", stream_sid=self.session.stream_sid, error=str(e))

    def cancel(self) -> None:
        """Cancel the pending silence timer, if any."""
        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None

    def _rearm(self) -> None:
        self.cancel()
        self._timer_task = asyncio.create_task(self._fire_after(self._debounce_s))

    async def _fire_after(self, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return

        # Detach so a frame arriving during dispatch arms a fresh timer instead of cancelling this one.
        self._timer_task = None

        text = self.session.speech_buffer
        if len(text) < self._min_speech_length:
            return

        self.session.reset_utterance()
        logger.debug("Silence detected, utterance finalized", stream_sid=self.session.stream_sid, chars=len(text))
        await self._on_utterance(text)
