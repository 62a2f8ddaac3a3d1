"""
Per-call connection session.

Owns one call end to end: Twilio stream events in, utterance segmentation,
acknowledgment fillers, the intake dialogue, concurrent speech synthesis and
ordered playback out. The session is the only subscriber of each component's
output, so events flow one way:

    media -> segmenter/transcriber -> policy -> fragments -> synthesis
          -> ordering buffer -> outbound queue -> Twilio
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

import structlog

from src.intake.acknowledgment import AcknowledgmentThrottle
from src.intake.config import get_config
from src.intake.functions import CapabilityRegistry
from src.intake.llm import create_conversation_model
from src.intake.models import ResponseFragment, Session, SessionStatus
from src.intake.ordering import ResponseOrderingBuffer
from src.intake.policy import RETRY_PROMPT, DialoguePolicyEngine, redact_for_logs
from src.intake.segmenter import UtteranceSegmenter
from src.intake.stt import DeepgramTranscriber
from src.intake.tts import SpeechSynthesizer
from src.intake.twilio_protocol import (
    TwilioEventType,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OutboundAudio:
    """A synthesized fragment ready to be framed and sent to Twilio."""

    index: Optional[int]
    audio: bytes


class ConnectionSession:
    """
    One Twilio media stream.

    Lifecycle is OPEN -> ACTIVE (on `start`) -> CLOSED (on `stop`, transport
    close or error). The session inserts itself into `registry` on creation
    and removes itself on close; `close()` is idempotent.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        capabilities: CapabilityRegistry,
        *,
        config: Optional[Any] = None,
        registry: Optional["SessionRegistry"] = None,
        model: Optional[Any] = None,
        synthesizer: Optional[Any] = None,
        transcriber: Optional[Any] = None,
        throttle: Optional[AcknowledgmentThrottle] = None,
    ):
        self.config = config or get_config()
        self.session = Session()
        self._send_message = send_message
        self._registry = registry
        self._protocol = TwilioProtocolHandler()

        self._transcriber = transcriber or DeepgramTranscriber(
            on_partial=self.on_partial_transcript,
            on_utterance=self.on_final_transcript,
            config=self.config,
        )
        self._synthesizer = synthesizer or SpeechSynthesizer(self.config)
        self._throttle = throttle or AcknowledgmentThrottle(
            cooldown_ms=self.config.ack_cooldown_ms,
            max_per_utterance=self.config.max_acks_per_utterance,
        )
        self._segmenter = UtteranceSegmenter(
            self.session,
            self._on_utterance,
            self._transcriber.send_audio,
            debounce_ms=self.config.silence_debounce_ms,
            min_speech_length=self.config.min_speech_length,
        )
        self._policy = DialoguePolicyEngine(
            self.session,
            model or create_conversation_model(self.config),
            capabilities,
            self.dispatch_fragment,
            min_speech_length=self.config.min_speech_length,
            min_detail_turns=self.config.min_detail_turns,
            function_calling=self.config.function_calling_enabled,
        )
        self._buffer: Optional[ResponseOrderingBuffer] = None
        self._outbound: "asyncio.Queue[OutboundAudio]" = asyncio.Queue()

        self._sender_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None
        self._synthesis_tasks: Set[asyncio.Task] = set()
        self._started_at = time.time()
        self.fragments_sent = 0

        if self._registry is not None:
            self._registry.add(self)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def stream_sid(self) -> str:
        return self.session.stream_sid

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def closed(self) -> bool:
        return self.session.closed

    @property
    def policy(self) -> DialoguePolicyEngine:
        return self._policy

    @property
    def segmenter(self) -> UtteranceSegmenter:
        return self._segmenter

    @property
    def buffer(self) -> Optional[ResponseOrderingBuffer]:
        return self._buffer

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Malformed messages are logged and dropped; they never close the call.
        """
        if self.closed:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", stream_sid=self.stream_sid, error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected", session_id=self.session_id)

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            if self.status != SessionStatus.ACTIVE:
                logger.debug("Media before start, dropping frame", session_id=self.session_id)
                return
            await self._segmenter.on_frame(event.payload)

        elif event_type == TwilioEventType.MARK:
            rtt_ms = self._protocol.handle_mark(event)
            logger.info(
                "Audio mark completed",
                stream_sid=self.stream_sid,
                mark_name=event.name,
                mark_rtt_ms=round(rtt_ms, 2),
            )

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", stream_sid=self.stream_sid, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Media stream ended", stream_sid=self.stream_sid)
            await self.close("stop")

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.status != SessionStatus.OPEN:
            logger.warning("Duplicate start event ignored", stream_sid=self.stream_sid)
            return

        self.session.stream_sid = event.stream_sid
        self.session.call_sid = event.call_sid
        self.session.status = SessionStatus.ACTIVE
        self.session.last_speech_at = time.monotonic()
        self._protocol.stream_sid = event.stream_sid
        self._buffer = ResponseOrderingBuffer(
            self._release,
            skip_timeout_ms=self.config.ordering_skip_timeout_ms,
            stream_sid=event.stream_sid,
        )
        logger.info("Call started", call_sid=event.call_sid, stream_sid=event.stream_sid)

        self._sender_task = asyncio.create_task(self._sender())

        # Start STT in the background so a slow handshake doesn't delay the greeting.
        self._stt_start_task = asyncio.create_task(self._start_transcriber())

        greeting = ResponseFragment(
            index=self.session.next_fragment_index(),
            text=self.config.greeting_text,
            interaction_index=0,
        )
        await self.dispatch_fragment(greeting)

    async def _start_transcriber(self) -> None:
        try:
            ok = await self._transcriber.connect()
            if ok:
                logger.info("STT ready", stream_sid=self.stream_sid)
            else:
                logger.error("STT failed to start", stream_sid=self.stream_sid)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("STT start task error", stream_sid=self.stream_sid, error=str(e))

    async def on_partial_transcript(self, text: str) -> None:
        """Best-effort text for the utterance in progress."""
        if self.closed or not text or len(text) < self.config.min_speech_length:
            return

        self.session.speech_buffer = text
        self.session.last_speech_at = time.monotonic()

        phrase = self._throttle.maybe_acknowledge(self.session)
        if phrase:
            await self.dispatch_fragment(
                ResponseFragment(index=None, text=phrase, interaction_index=self.session.interaction_count)
            )

    async def on_final_transcript(self, text: str) -> None:
        """The transcriber closed an utterance on its own endpointing."""
        if self.closed or not text or len(text) < self.config.min_speech_length:
            return

        self._segmenter.cancel()
        self.session.reset_utterance()
        await self._on_utterance(text)

    async def _on_utterance(self, text: str) -> None:
        if self.closed:
            return
        if self.session.processing_response or (self._turn_task and not self._turn_task.done()):
            logger.info(
                "Turn in flight, dropping utterance",
                stream_sid=self.stream_sid,
                text=redact_for_logs(text)[:60],
            )
            return

        self._turn_task = asyncio.create_task(self._run_turn(text))

    async def _run_turn(self, text: str) -> None:
        interaction = self.session.interaction_count
        try:
            await self._policy.handle_utterance(text, interaction)
        except asyncio.CancelledError:
            logger.debug("Turn cancelled", stream_sid=self.stream_sid)
            raise
        except Exception as e:
            logger.error("Turn failed", stream_sid=self.stream_sid, error=str(e))
            return
        self.session.interaction_count += 1

    async def dispatch_fragment(self, fragment: ResponseFragment) -> None:
        """Start synthesis for a fragment; completion order is not guaranteed."""
        if self.closed:
            return

        task = asyncio.create_task(self._synthesize_fragment(fragment))
        self._synthesis_tasks.add(task)
        task.add_done_callback(self._synthesis_tasks.discard)

    async def _synthesize_fragment(self, fragment: ResponseFragment) -> None:
        audio = await self._synthesize_text(fragment)

        if self.closed:
            logger.debug("Session closed, discarding synthesized fragment", fragment_index=fragment.index)
            return

        if fragment.is_sequenced:
            if self._buffer is not None:
                self._buffer.push(fragment.index, audio)
        elif audio:
            self._outbound.put_nowait(OutboundAudio(index=None, audio=audio))

    async def _synthesize_text(self, fragment: ResponseFragment) -> bytes:
        try:
            return await self._synthesizer.synthesize(fragment.text)
        except Exception as e:
            logger.error(
                "Speech synthesis failed",
                stream_sid=self.stream_sid,
                fragment_index=fragment.index,
                error_type=type(e).__name__,
                error=str(e),
            )

        # Unsequenced fillers are simply dropped.
        if not fragment.is_sequenced or fragment.text == RETRY_PROMPT:
            return b""

        try:
            return await self._synthesizer.synthesize(RETRY_PROMPT)
        except Exception as e:
            logger.error("Fallback synthesis failed", stream_sid=self.stream_sid, fragment_index=fragment.index, error=str(e))
        # Empty audio still advances the ordering cursor.
        return b""

    def _release(self, index: int, audio: bytes) -> None:
        self._outbound.put_nowait(OutboundAudio(index=index, audio=audio))

    async def _sender(self) -> None:
        """Single writer for the outbound channel."""
        try:
            while True:
                item = await self._outbound.get()
                if not item.audio:
                    logger.debug("Skipping empty fragment", stream_sid=self.stream_sid, fragment_index=item.index)
                    continue
                for message in self._protocol.create_fragment_messages(item.index, item.audio):
                    await self._send_message(message)
                self.fragments_sent += 1
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Outbound send failed", stream_sid=self.stream_sid, error=str(e))

    async def close(self, reason: str = "closed") -> None:
        """Tear the call down. Safe to call more than once."""
        if self.closed:
            return
        self.session.status = SessionStatus.CLOSED

        self._segmenter.cancel()
        self._policy.end()
        if self._buffer is not None:
            self._buffer.close()

        current = asyncio.current_task()
        tasks: List[asyncio.Task] = [
            t
            for t in (self._turn_task, self._sender_task, self._stt_start_task, *self._synthesis_tasks)
            if t is not None and not t.done() and t is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._transcriber.disconnect()
        except Exception as e:
            logger.warning("Error disconnecting transcriber", stream_sid=self.stream_sid, error=str(e))

        try:
            await self._synthesizer.close()
        except Exception as e:
            logger.warning("Error closing synthesizer", stream_sid=self.stream_sid, error=str(e))

        if self._registry is not None:
            self._registry.remove(self)

        logger.info(
            "Session closed",
            reason=reason,
            call_sid=self.session.call_sid,
            stream_sid=self.stream_sid,
            metrics=self.metrics(),
        )

    def metrics(self) -> Dict[str, Any]:
        return {
            "duration_seconds": round(time.time() - self._started_at, 2),
            "interactions": self.session.interaction_count,
            "fragments_allocated": self.session.fragment_counter,
            "fragments_sent": self.fragments_sent,
            "fragments_skipped": self._buffer.skipped if self._buffer else 0,
            "fragments_dropped": self._buffer.dropped if self._buffer else 0,
            "mark_rtt_ms": round(self._protocol.avg_mark_rtt_ms, 2),
        }


class SessionRegistry:
    """
    Active sessions, keyed by session id.

    Owned by the server. Sessions add themselves on construction and remove
    themselves on close.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ConnectionSession] = {}

    def add(self, session: ConnectionSession) -> None:
        self._sessions[session.session_id] = session

    def remove(self, session: ConnectionSession) -> None:
        self._sessions.pop(session.session_id, None)

    def get(self, session_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(session_id)

    def __contains__(self, session: object) -> bool:
        return isinstance(session, ConnectionSession) and session.session_id in self._sessions

    def __iter__(self) -> Iterator[ConnectionSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self, reason: str = "shutdown") -> None:
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Closing active sessions", count=len(sessions), reason=reason)
        for session in sessions:
            await session.close(reason)
