from __future__ import annotations

from typing import Any, Optional

import structlog

from src.intake.config import get_config
from src.intake.tts_providers.base import TTSError, TTSProvider
from src.intake.tts_providers.cartesia import CartesiaTTS
from src.intake.tts_providers.openai_tts import OpenAITTS

logger = structlog.get_logger(__name__)


def create_tts_provider(config: Optional[Any] = None) -> TTSProvider:
    config = config or get_config()
    tts = (config.tts_provider or "cartesia").strip().lower()

    if tts == "cartesia":
        return CartesiaTTS(config)
    if tts == "openai":
        return OpenAITTS(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechSynthesizer:
    """
    Per-call speech synthesis.

    `synthesize` returns the complete mu-law payload for one fragment. Calls are
    independent and may run concurrently; completion order is not guaranteed.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider

    @property
    def provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = create_tts_provider(self.config)
        return self._provider

    async def synthesize(self, text: str) -> bytes:
        audio = bytearray()
        async for chunk in self.provider.synthesize_streaming(text):
            if chunk.audio_bytes:
                audio += chunk.audio_bytes

        if not audio:
            raise TTSError("Provider returned no audio")
        return bytes(audio)

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
            self._provider = None
