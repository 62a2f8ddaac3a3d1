"""
Intake dialogue policy.

Drives the conversation from "what's wrong?" through clarifying questions,
the caller's zip code, contractor availability and an optional appointment
request. Deterministic steps (zip-code lookup, scheduling yes/no, booking
capture, zip prompt) bypass the model; everything else is a streamed model
reply cut at the first question mark.
"""

import re
from contextlib import aclosing
from typing import Awaitable, Callable, Dict, Optional, Tuple

import structlog

from src.intake.functions import CapabilityRegistry, IntakeContext
from src.intake.llm import ConversationHistory, ConversationModel, ToolCallRequest
from src.intake.models import IntakeState, ResponseFragment, Session

logger = structlog.get_logger(__name__)

RETRY_PROMPT = "Could you repeat that?"
LOCATION_PROMPT = "What's your zip code?"
SCHEDULE_FOLLOW_UP = "When would you prefer the contractor to come? And is this an urgent matter?"
SCHEDULE_DECLINED = "No problem. Please call back when you'd like to schedule."

FOLLOW_UP_INSTRUCTION = (
    "Ask ONE specific follow-up question about their issue. "
    "Focus on severity, urgency, or duration of the problem."
)
OPEN_QUESTION_INSTRUCTION = "Ask a specific question about their problem. Focus on what exactly is wrong."

# Checked in order; the first category with a matching keyword wins.
SERVICE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "plumbing": ("toilet", "sink", "pipe", "drain", "faucet", "plumb", "water", "bathroom"),
    "electrical": ("electric", "power", "light", "outlet", "switch", "wire", "wiring"),
    "hvac": ("heat", "air", "ac", "furnace", "hvac", "cooling", "temperature", "thermostat"),
    "general": ("wall", "ceiling", "repair", "fix", "broken", "maintenance", "damage", "hole", "crack"),
}


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Short keywords ("ac") must be whole words; longer ones match word prefixes ("plumb" -> "plumber").
    if len(keyword) <= 2:
        return re.compile(rf"\b{re.escape(keyword)}\b")
    return re.compile(rf"\b{re.escape(keyword)}")


_SERVICE_PATTERNS: Tuple[Tuple[str, Tuple[re.Pattern[str], ...]], ...] = tuple(
    (category, tuple(_keyword_pattern(k) for k in keywords))
    for category, keywords in SERVICE_KEYWORDS.items()
)

_ZIP_RE = re.compile(r"\b\d{5}\b")
_YES_RE = re.compile(r"\b(yes|yeah|yep|yup|sure|okay|ok|definitely|absolutely|please)\b", re.IGNORECASE)
_NO_RE = re.compile(r"\b(no|nah|nope|not|don't|dont)\b", re.IGNORECASE)
_SCHEDULE_OFFER_RE = re.compile(r"schedule an appointment", re.IGNORECASE)
_URGENT_RE = re.compile(
    r"\b(urgent|emergency|asap|as soon as possible|right away|immediately|today)\b",
    re.IGNORECASE,
)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}")


def redact_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs: emails -> [EMAIL], phone numbers -> [PHONE-***1234].
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        return f"[PHONE-***{digits[-4:]}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


def determine_service_type(text: str) -> Optional[str]:
    """Classify an utterance into a service category by keyword, or None."""
    lowered = (text or "").lower()
    for category, patterns in _SERVICE_PATTERNS:
        if any(p.search(lowered) for p in patterns):
            return category
    return None


def find_zip_code(text: str) -> Optional[str]:
    match = _ZIP_RE.search(text or "")
    return match.group(0) if match else None


def is_affirmative(text: str) -> bool:
    return bool(_YES_RE.search(text or ""))


def is_negative(text: str) -> bool:
    return bool(_NO_RE.search(text or ""))


def offers_scheduling(assistant_text: str) -> bool:
    return bool(_SCHEDULE_OFFER_RE.search(assistant_text or ""))


class DialoguePolicyEngine:
    """
    Per-call intake state machine.

    Replies are handed to `emit` as `ResponseFragment`s carrying the next
    session fragment index. Collaborator failures never escape
    `handle_utterance`; the caller hears a retry prompt instead.
    """

    def __init__(
        self,
        session: Session,
        model: ConversationModel,
        registry: CapabilityRegistry,
        emit: Callable[[ResponseFragment], Awaitable[None]],
        *,
        history: Optional[ConversationHistory] = None,
        min_speech_length: int = 3,
        min_detail_turns: int = 4,
        function_calling: bool = True,
    ):
        self.session = session
        self.history = history if history is not None else ConversationHistory()
        self.context = IntakeContext(call_sid=session.call_sid)
        self._model = model
        self._registry = registry
        self._emit = emit
        self._min_speech_length = min_speech_length
        self._min_detail_turns = min_detail_turns
        self._function_calling = function_calling

    @property
    def state(self) -> IntakeState:
        return self.session.conversation_state

    @state.setter
    def state(self, value: IntakeState) -> None:
        if value != self.session.conversation_state:
            logger.info(
                "Intake state changed",
                call_sid=self.session.call_sid,
                previous=self.session.conversation_state.value,
                current=value.value,
            )
        self.session.conversation_state = value

    @property
    def service_type(self) -> Optional[str]:
        return self.context.service_type

    @property
    def details_sufficient(self) -> bool:
        return self.state not in (IntakeState.INITIAL, IntakeState.COLLECTING_DETAILS)

    def end(self) -> None:
        """Mark the conversation finished (call ended)."""
        self.state = IntakeState.ENDED

    async def handle_utterance(self, text: str, interaction_index: int) -> None:
        """Process one finalized caller utterance."""
        if self.session.processing_response:
            logger.debug("Completion in flight, dropping utterance", call_sid=self.session.call_sid)
            return
        if self.state == IntakeState.ENDED:
            return
        if not text or len(text) < self._min_speech_length:
            return

        self.session.processing_response = True
        self.session.utterance_acks = 0
        self.context.call_sid = self.session.call_sid
        logger.info(
            "Processing utterance",
            call_sid=self.session.call_sid,
            interaction=interaction_index,
            state=self.state.value,
            text=redact_for_logs(text)[:120],
        )

        try:
            await self._process(text, interaction_index)
        except Exception as e:
            logger.error(
                "Turn failed, asking caller to repeat",
                call_sid=self.session.call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._reply(RETRY_PROMPT, interaction_index)
        finally:
            self.session.processing_response = False

    async def _process(self, text: str, interaction_index: int) -> None:
        self.history.add_user_message(text)
        zip_code = find_zip_code(text)

        if zip_code and self.service_type and self.details_sufficient:
            await self._check_availability(zip_code, interaction_index)
            return

        if self.context.contractor is not None and offers_scheduling(self.history.previous_assistant_message()):
            if is_affirmative(text):
                self.state = IntakeState.SCHEDULING
                await self._reply(SCHEDULE_FOLLOW_UP, interaction_index)
                return
            if is_negative(text):
                await self._reply(SCHEDULE_DECLINED, interaction_index)
                self._start_new_topic()
                return

        if self.state == IntakeState.SCHEDULING:
            await self._request_booking(text, interaction_index)
            return

        if not self.service_type:
            category = determine_service_type(text)
            if category:
                self.context.service_type = category
                self.state = IntakeState.COLLECTING_DETAILS
                logger.info("Service category resolved", call_sid=self.session.call_sid, service_type=category)

        if self.service_type and self.details_sufficient:
            self.state = IntakeState.AWAITING_LOCATION
            await self._reply(LOCATION_PROMPT, interaction_index)
            return

        turns_before_reply = len(self.history)
        instruction = FOLLOW_UP_INSTRUCTION if self.service_type else OPEN_QUESTION_INSTRUCTION
        await self._model_reply(instruction, interaction_index)

        # A tool call may already have moved the conversation on.
        if self.state == IntakeState.COLLECTING_DETAILS and turns_before_reply >= self._min_detail_turns:
            self.state = IntakeState.AWAITING_LOCATION
            await self._reply(LOCATION_PROMPT, interaction_index)

    async def _model_reply(self, instruction: str, interaction_index: int) -> None:
        tools = self._registry.tools() if self._function_calling else None
        partial = ""
        tool_call: Optional[ToolCallRequest] = None

        # Stop at the first question mark and close the stream rather than draining it.
        async with aclosing(self._model.stream_completion(self.history, instruction, tools)) as events:
            async for event in events:
                if isinstance(event, ToolCallRequest):
                    tool_call = event
                    break
                partial += event
                if "?" in partial:
                    break

        if tool_call is not None:
            await self._run_tool_call(tool_call, interaction_index)
            return

        reply = partial.strip()
        if reply:
            await self._reply(reply, interaction_index)
        else:
            logger.warning("Model returned no text", call_sid=self.session.call_sid)

    async def _run_tool_call(self, call: ToolCallRequest, interaction_index: int) -> None:
        logger.info("Model requested capability", call_sid=self.session.call_sid, capability=call.name)
        if call.name == "check_availability":
            self.context.contractor = None
        bookable = self._bookable()
        message = await self._registry.invoke(call.name, call.arguments, self.context)
        await self._reply(message, interaction_index)

        if call.name == "check_availability" and self.context.contractor is not None:
            self.state = IntakeState.AWAITING_SCHEDULE_CONFIRMATION
        elif call.name == "request_booking":
            self._after_booking_attempt(bookable)

    async def _check_availability(self, zip_code: str, interaction_index: int) -> None:
        self.state = IntakeState.CHECKING_AVAILABILITY
        self.context.contractor = None
        message = await self._registry.invoke(
            "check_availability",
            {"zip_code": zip_code, "service_type": self.service_type},
            self.context,
        )
        if self.context.contractor is not None:
            self.state = IntakeState.AWAITING_SCHEDULE_CONFIRMATION
        else:
            self.state = IntakeState.AWAITING_LOCATION
        await self._reply(message, interaction_index)

    async def _request_booking(self, text: str, interaction_index: int) -> None:
        bookable = self._bookable()
        message = await self._registry.invoke(
            "request_booking",
            {"preferred_time": text, "urgent": bool(_URGENT_RE.search(text))},
            self.context,
        )
        await self._reply(message, interaction_index)
        self._after_booking_attempt(bookable)

    def _bookable(self) -> bool:
        return self.context.contractor is not None and self.context.zip_code is not None

    def _after_booking_attempt(self, booked: bool) -> None:
        if booked:
            self._start_new_topic()
        elif self.service_type:
            # Nothing was recorded; keep the category and wait for the zip code.
            self.context.contractor = None
            self.state = IntakeState.AWAITING_LOCATION
        else:
            self.state = IntakeState.INITIAL

    def _start_new_topic(self) -> None:
        self.context.service_type = None
        self.context.zip_code = None
        self.context.contractor = None
        self.state = IntakeState.INITIAL

    async def _reply(self, text: str, interaction_index: int) -> None:
        fragment = ResponseFragment(
            index=self.session.next_fragment_index(),
            text=text,
            interaction_index=interaction_index,
        )
        self.history.add_assistant_message(text)
        await self._emit(fragment)
