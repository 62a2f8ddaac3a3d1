"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import patch

import pytest

from src.intake.llm import ToolCallRequest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "CARTESIA_API_KEY": "test_cartesia_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "cartesia",
        "SILENCE_DEBOUNCE_MS": "800",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.intake.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeModel:
    """
    Stands in for the conversational model.

    Each call pops the next scripted reply: a string is streamed word by word,
    a ToolCallRequest is yielded as-is, an Exception is raised.
    """

    def __init__(self, replies: Optional[Sequence[Any]] = None):
        self.replies: List[Any] = list(replies or [])
        self.calls: List[Dict[str, Any]] = []
        self.tokens_yielded = 0
        self.closed_early = False

    async def stream_completion(self, history, instruction=None, tools=None):
        self.calls.append(
            {"messages": history.get_messages(), "instruction": instruction, "tools": tools}
        )
        reply = self.replies.pop(0) if self.replies else "Can you tell me more?"
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ToolCallRequest):
            yield reply
            return

        words = reply.split(" ")
        finished = False
        try:
            for i, word in enumerate(words):
                self.tokens_yielded += 1
                yield word if i == 0 else " " + word
            finished = True
        finally:
            if not finished:
                self.closed_early = True


class FakeSynthesizer:
    """Returns deterministic audio per text; per-text delays and failures."""

    def __init__(self, delays: Optional[Dict[str, float]] = None, failures: Sequence[str] = ()):
        self.delays = delays or {}
        self.failures = set(failures)
        self.requests: List[str] = []
        self.closed = False

    @staticmethod
    def audio_for(text: str) -> bytes:
        # The text itself; anything under 160 bytes becomes one padded frame.
        return text.encode("utf-8")

    async def synthesize(self, text: str) -> bytes:
        self.requests.append(text)
        delay = self.delays.get(text, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if text in self.failures:
            raise RuntimeError(f"synthesis failed for {text!r}")
        return self.audio_for(text)

    async def close(self) -> None:
        self.closed = True


class FakeTranscriber:
    """Records forwarded audio; never touches the network."""

    def __init__(self):
        self.frames: List[bytes] = []
        self.connected = False
        self.disconnected = 0

    async def connect(self) -> bool:
        self.connected = True
        return True

    async def disconnect(self) -> None:
        self.disconnected += 1

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.frames.append(audio_bytes)


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
