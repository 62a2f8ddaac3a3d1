"""
Quick acknowledgments that mask the gap between hearing the caller and replying.
"""

import random
import time
from typing import Callable, Optional, Sequence

import structlog

from src.intake.models import Session

logger = structlog.get_logger(__name__)

ACKNOWLEDGMENTS: tuple[str, ...] = (
    "Got it.",
    "Okay.",
    "I see.",
)


class AcknowledgmentThrottle:
    """
    Decides whether a partial transcript earns a filler phrase.

    At most `max_per_utterance` fillers per utterance, none while a completion is
    in flight, and never closer together than `cooldown_ms`.
    """

    def __init__(
        self,
        *,
        cooldown_ms: int = 300,
        max_per_utterance: int = 1,
        phrases: Sequence[str] = ACKNOWLEDGMENTS,
        clock: Callable[[], float] = time.monotonic,
        chooser: Callable[[Sequence[str]], str] = random.choice,
    ):
        if not phrases:
            raise ValueError("At least one acknowledgment phrase is required")
        self._cooldown_s = cooldown_ms / 1000.0
        self._max_per_utterance = max_per_utterance
        self._phrases = tuple(phrases)
        self._clock = clock
        self._chooser = chooser

    def maybe_acknowledge(self, session: Session) -> Optional[str]:
        """Return a filler phrase and record it on the session, or None if throttled."""
        if session.processing_response:
            return None
        if session.utterance_acks >= self._max_per_utterance:
            return None

        now = self._clock()
        if session.last_ack_at is not None and now - session.last_ack_at < self._cooldown_s:
            return None

        phrase = self._chooser(self._phrases)
        session.last_ack_at = now
        session.utterance_acks += 1
        logger.debug("Acknowledgment issued", stream_sid=session.stream_sid, phrase=phrase)
        return phrase
