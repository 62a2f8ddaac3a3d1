"""
Tests for speech synthesis.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.intake.config import get_config
from src.intake.tts import SpeechSynthesizer, create_tts_provider
from src.intake.tts_providers.base import TTSChunk, TTSError, TTSProvider
from src.intake.tts_providers.cartesia import CartesiaTTS
from src.intake.tts_providers.openai_tts import OpenAITTS


class ScriptedProvider(TTSProvider):
    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    async def synthesize_streaming(self, text, *, voice_id=None):
        for chunk in self.chunks:
            yield chunk

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_synthesize_joins_chunks():
    provider = ScriptedProvider([
        TTSChunk(audio_bytes=b"\x01" * 100),
        TTSChunk(audio_bytes=b"\x02" * 60),
        TTSChunk(audio_bytes=b"", is_final=True),
    ])
    synthesizer = SpeechSynthesizer(provider=provider)

    audio = await synthesizer.synthesize("Okay.")

    assert audio == b"\x01" * 100 + b"\x02" * 60


@pytest.mark.asyncio
async def test_no_audio_is_an_error():
    synthesizer = SpeechSynthesizer(provider=ScriptedProvider([TTSChunk(audio_bytes=b"", is_final=True)]))

    with pytest.raises(TTSError):
        await synthesizer.synthesize("Okay.")


@pytest.mark.asyncio
async def test_close_releases_provider():
    provider = ScriptedProvider([])
    synthesizer = SpeechSynthesizer(provider=provider)

    await synthesizer.close()

    assert provider.closed


def test_provider_selection():
    config = get_config()

    assert isinstance(create_tts_provider(dataclasses.replace(config, tts_provider="cartesia")), CartesiaTTS)
    assert isinstance(create_tts_provider(dataclasses.replace(config, tts_provider="openai")), OpenAITTS)

    with pytest.raises(ValueError):
        create_tts_provider(dataclasses.replace(config, tts_provider="espeak"))


@pytest.mark.asyncio
async def test_openai_pcm_is_converted_to_twilio_ulaw():
    client = SimpleNamespace(
        audio=SimpleNamespace(
            speech=SimpleNamespace(
                create=AsyncMock(return_value=SimpleNamespace(content=b"\x00\x00" * 2400)),
            )
        ),
        close=AsyncMock(),
    )
    provider = OpenAITTS(get_config(), client=client)

    chunks = [c async for c in provider.synthesize_streaming("Got it.")]

    assert len(chunks) == 1
    assert chunks[0].is_final
    # 100ms of 24kHz PCM becomes ~800 bytes of 8kHz mu-law.
    assert abs(len(chunks[0].audio_bytes) - 800) <= 2
    kwargs = client.audio.speech.create.await_args.kwargs
    assert kwargs["response_format"] == "pcm"
    assert kwargs["input"] == "Got it."


@pytest.mark.asyncio
async def test_blank_text_is_not_sent_to_openai():
    client = SimpleNamespace(
        audio=SimpleNamespace(speech=SimpleNamespace(create=AsyncMock())),
        close=AsyncMock(),
    )
    provider = OpenAITTS(get_config(), client=client)

    chunks = [c async for c in provider.synthesize_streaming("   ")]

    assert chunks == []
    client.audio.speech.create.assert_not_awaited()
