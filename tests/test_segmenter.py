"""
Tests for silence-based utterance segmentation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.intake.models import Session
from src.intake.segmenter import UtteranceSegmenter

DEBOUNCE_MS = 50
FRAME = b"\xff" * 160


def _segmenter(session, on_utterance=None, send_audio=None, **kwargs):
    return UtteranceSegmenter(
        session,
        on_utterance or AsyncMock(),
        send_audio or AsyncMock(),
        debounce_ms=kwargs.pop("debounce_ms", DEBOUNCE_MS),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_frames_are_forwarded_unconditionally():
    session = Session(stream_sid="MZ1")
    send_audio = AsyncMock()
    segmenter = _segmenter(session, send_audio=send_audio)

    await segmenter.on_frame(FRAME)
    await segmenter.on_frame(FRAME)

    assert send_audio.await_count == 2
    segmenter.cancel()


@pytest.mark.asyncio
async def test_silence_finalizes_buffered_speech():
    session = Session(stream_sid="MZ1")
    on_utterance = AsyncMock()
    segmenter = _segmenter(session, on_utterance=on_utterance)

    session.speech_buffer = "my sink is leaking"
    session.utterance_acks = 1
    await segmenter.on_frame(FRAME)
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)

    on_utterance.assert_awaited_once_with("my sink is leaking")
    assert session.speech_buffer == ""
    assert session.utterance_acks == 0
    assert not segmenter.timer_pending


@pytest.mark.asyncio
async def test_frames_inside_window_fire_once_after_last_gap():
    session = Session(stream_sid="MZ1")
    on_utterance = AsyncMock()
    segmenter = _segmenter(session, on_utterance=on_utterance)
    session.speech_buffer = "the power is out"

    for _ in range(8):
        await segmenter.on_frame(FRAME)
        await asyncio.sleep(DEBOUNCE_MS / 1000 / 4)

    on_utterance.assert_not_awaited()

    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)
    assert on_utterance.await_count == 1


@pytest.mark.asyncio
async def test_short_buffer_does_not_finalize():
    session = Session(stream_sid="MZ1")
    on_utterance = AsyncMock()
    segmenter = _segmenter(session, on_utterance=on_utterance)
    session.speech_buffer = "uh"

    await segmenter.on_frame(FRAME)
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)

    on_utterance.assert_not_awaited()
    assert session.speech_buffer == "uh"


@pytest.mark.asyncio
async def test_cancel_prevents_firing():
    session = Session(stream_sid="MZ1")
    on_utterance = AsyncMock()
    segmenter = _segmenter(session, on_utterance=on_utterance)
    session.speech_buffer = "my toilet is clogged"

    await segmenter.on_frame(FRAME)
    assert segmenter.timer_pending
    segmenter.cancel()
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)

    on_utterance.assert_not_awaited()
    assert not segmenter.timer_pending


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"", None, "not-bytes"])
async def test_malformed_frames_are_dropped(payload):
    session = Session(stream_sid="MZ1")
    send_audio = AsyncMock()
    on_utterance = AsyncMock()
    segmenter = _segmenter(session, on_utterance=on_utterance, send_audio=send_audio)
    session.speech_buffer = "water everywhere"

    # Arm a real timer first; a bad frame must not reset or break it.
    await segmenter.on_frame(FRAME)
    await segmenter.on_frame(payload)

    assert send_audio.await_count == 1
    assert segmenter.timer_pending

    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)
    on_utterance.assert_awaited_once_with("water everywhere")


@pytest.mark.asyncio
async def test_transcriber_error_does_not_stop_timer():
    session = Session(stream_sid="MZ1")
    on_utterance = AsyncMock()
    send_audio = AsyncMock(side_effect=RuntimeError("socket closed"))
    segmenter = _segmenter(session, on_utterance=on_utterance, send_audio=send_audio)
    session.speech_buffer = "the heater broke"

    await segmenter.on_frame(FRAME)
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 3)

    on_utterance.assert_awaited_once_with("the heater broke")


@pytest.mark.asyncio
async def test_frame_during_dispatch_arms_fresh_timer():
    session = Session(stream_sid="MZ1")
    segmenter = None
    dispatched = []

    async def on_utterance(text):
        dispatched.append(text)
        if len(dispatched) == 1:
            # A frame arriving while the previous utterance is being handed off.
            session.speech_buffer = "second thing"
            await segmenter.on_frame(FRAME)

    segmenter = _segmenter(session, on_utterance=on_utterance)
    session.speech_buffer = "first thing"

    await segmenter.on_frame(FRAME)
    await asyncio.sleep(DEBOUNCE_MS / 1000 * 5)

    assert dispatched == ["first thing", "second thing"]
    segmenter.cancel()
