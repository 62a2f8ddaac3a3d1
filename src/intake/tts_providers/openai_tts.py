from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import structlog
from openai import AsyncOpenAI

from src.intake.audio import pcm16_to_twilio_ulaw
from src.intake.config import get_config
from src.intake.tts_providers.base import TTSChunk, TTSProvider

logger = structlog.get_logger(__name__)

# The speech endpoint's raw "pcm" format is 24kHz mono 16-bit little-endian.
OPENAI_PCM_SAMPLE_RATE = 24000


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    This provider synthesizes the whole fragment and yields it as one chunk.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        response = await self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=voice_id or self.config.openai_tts_voice,
            input=text,
            response_format="pcm",
        )
        ulaw = pcm16_to_twilio_ulaw(response.content, OPENAI_PCM_SAMPLE_RATE)
        yield TTSChunk(audio_bytes=ulaw, is_final=True)

    async def close(self) -> None:
        await self._client.close()
