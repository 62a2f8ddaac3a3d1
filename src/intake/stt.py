"""
Deepgram Speech-to-Text streaming client.

Twilio mu-law 8kHz is sent to Deepgram as-is. Interim results surface as
partial text (used for acknowledgments and the silence segmenter); final
segments are accumulated and emitted as one utterance when Deepgram signals
the end of speech.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional
import time

import structlog
import websockets

from src.intake.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

TextCallback = Callable[[str], Awaitable[None]]


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    speech_final: bool = False
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    utterances: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


class DeepgramTranscriber:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_partial: Optional[TextCallback] = None,
        on_utterance: Optional[TextCallback] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_partial = on_partial
        self._on_utterance = on_utterance
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._final_parts: List[str] = []
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def _build_url(self) -> str:
        return (
            f"{DEEPGRAM_URL}"
            f"?model={self.config.deepgram_model}"
            f"&encoding=mulaw"
            f"&sample_rate=8000"
            f"&channels=1"
            f"&punctuate=true"
            f"&smart_format=true"
            f"&interim_results=true"
            f"&vad_events=true"
            f"&endpointing={self.config.deepgram_endpointing_ms}"
            f"&utterance_end_ms={self.config.deepgram_utterance_end_ms}"
        )

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        try:
            self._ws = await websockets.connect(
                self._build_url(),
                additional_headers={"Authorization": f"Token {self.config.deepgram_api_key}"},
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected", metrics=self._metrics.__dict__)

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            self._metrics.total_audio_ms += len(audio_bytes) / 8
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self.handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def handle_message(self, data: dict) -> None:
        """Handle a decoded message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            result = self._parse_results(data)
            if result is None:
                return

            self._metrics.record_transcript(result.is_final)
            if result.is_final:
                self._final_parts.append(result.text)
                text = " ".join(self._final_parts)
            else:
                text = " ".join(self._final_parts + [result.text])

            logger.debug(
                "STT transcript",
                text=text[:50],
                is_final=result.is_final,
                speech_final=result.speech_final,
            )

            if result.speech_final:
                await self._flush_utterance()
            elif self._on_partial:
                await self._on_partial(text)

        elif msg_type_norm in ("utteranceend", "utterance_end"):
            logger.debug("Utterance end detected")
            await self._flush_utterance()

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )

    @staticmethod
    def _parse_results(data: dict) -> Optional[TranscriptionResult]:
        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return None
        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            # An empty speech_final still closes the utterance built so far.
            if data.get("speech_final"):
                return TranscriptionResult(text="", is_final=False, speech_final=True)
            return None
        return TranscriptionResult(
            text=transcript,
            is_final=bool(data.get("is_final", False)),
            speech_final=bool(data.get("speech_final", False)),
            confidence=alternatives[0].get("confidence", 0.0),
        )

    async def _flush_utterance(self) -> None:
        text = " ".join(p for p in self._final_parts if p).strip()
        self._final_parts = []
        if not text:
            return
        self._metrics.utterances += 1
        if self._on_utterance:
            await self._on_utterance(text)
