"""
Conversational model client (OpenAI-compatible API, OpenAI or Groq).

Provides:
- Startup model validation (Groq)
- Streaming completions that yield text tokens and function-call requests
- The append-only turn history shared with the dialogue policy
"""

from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Union
import time

import httpx
import structlog
from openai import AsyncOpenAI

from src.intake.config import get_config

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

SYSTEM_PROMPT = """You are a friendly and efficient virtual receptionist for a home services platform. Your role is to help customers connect with the right service professionals for their home repair needs. Follow these guidelines:

1. Be concise but thorough in understanding the issue
2. Always get specific details about:
   - What exactly is broken/not working
   - How long has it been an issue
   - Is it an emergency
   - Any relevant details about severity

3. Follow this conversation flow:
   - Get initial problem description
   - Ask 2-3 specific follow-up questions about the issue
   - Once you have enough details, ask for zip code
   - After zip code, check contractor availability
   - If they want to schedule, get preferred time and urgency

4. Response patterns:
   - Keep initial responses short: "What's happening with your [item]?"
   - Ask specific follow-ups: "Is it completely clogged or just draining slowly?"
   - For zip code: "What's your zip code?"
   - For scheduling: "When would you like the contractor to come? Is this urgent?"

5. Important rules:
   - Ask one clear question at a time
   - Get enough details to inform the contractor
   - Focus on severity and urgency
   - Keep responses under 15 words unless describing contractor availability"""


@dataclass
class Turn:
    """A single entry in the conversation transcript."""
    role: str  # "system", "user" or "assistant"
    content: str
    name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        message = {"role": self.role, "content": self.content}
        if self.name:
            message["name"] = self.name
        return message


class ConversationHistory:
    """Append-only transcript, seeded with the system prompt."""

    def __init__(self, system_prompt: Optional[str] = SYSTEM_PROMPT):
        self._turns: List[Turn] = []
        if system_prompt:
            self._turns.append(Turn(role="system", content=system_prompt))

    def add(self, role: str, content: str, name: Optional[str] = None) -> Turn:
        turn = Turn(role=role, content=content, name=name)
        self._turns.append(turn)
        return turn

    def add_user_message(self, content: str, name: Optional[str] = None) -> None:
        self.add("user", content, name=name)

    def add_assistant_message(self, content: str) -> None:
        self.add("assistant", content)

    def previous_assistant_message(self) -> str:
        """
        The assistant turn immediately preceding the latest user turn.

        Returns '' when the turn before the latest user message is not an
        assistant turn.
        """
        for i in range(len(self._turns) - 1, -1, -1):
            if self._turns[i].role == "user":
                if i > 0 and self._turns[i - 1].role == "assistant":
                    return self._turns[i - 1].content
                return ""
        return ""

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [turn.to_message() for turn in self._turns]

    @property
    def turns(self) -> List[Turn]:
        return self._turns

    def __len__(self) -> int:
        return len(self._turns)


@dataclass
class ToolCallRequest:
    """A function call the model asked for, with its raw (unparsed) arguments."""
    name: str
    arguments: str
    call_id: str = ""


ModelEvent = Union[str, ToolCallRequest]


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(model_ids)[:10])
        logger.error("Groq model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update GROQ_MODEL in your .env file."
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class ConversationModel:
    """
    Streaming chat-completions client.

    Errors are raised to the caller; the dialogue policy decides what to say instead.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        provider = (config.llm_provider or "openai").strip().lower()
        if provider == "groq":
            self.model = config.groq_model
            self._client = client or AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)
        else:
            self.model = config.openai_model
            self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    async def stream_completion(
        self,
        history: ConversationHistory,
        instruction: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncGenerator[ModelEvent, None]:
        """
        Stream a completion for the full history plus a one-off system instruction.

        Yields text tokens as they arrive. Function calls are accumulated across
        deltas and yielded as `ToolCallRequest` once the stream ends. Closing the
        generator early closes the underlying HTTP stream.
        """
        messages = history.get_messages()
        if instruction:
            messages.append({"role": "system", "content": instruction})

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.config.llm_temperature,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        stream = await self._client.chat.completions.create(**kwargs)
        tool_calls: Dict[int, Dict[str, str]] = {}

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                for call in getattr(delta, "tool_calls", None) or []:
                    slot = tool_calls.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] += call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments

                if delta.content:
                    yield delta.content

            for position in sorted(tool_calls):
                slot = tool_calls[position]
                yield ToolCallRequest(name=slot["name"], arguments=slot["arguments"], call_id=slot["id"])
        finally:
            await stream.close()


def create_conversation_model(config: Optional[Any] = None) -> ConversationModel:
    return ConversationModel(config)


async def initialize_llm(config: Optional[Any] = None) -> None:
    """Validate the configured model at startup (Groq exposes a model listing)."""
    config = config or get_config()
    if config.llm_provider == "groq":
        await validate_groq_model(config.groq_api_key, config.groq_model)
