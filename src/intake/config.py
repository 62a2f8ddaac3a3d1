"""
Configuration management for the intake voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_GREETING = "Hello! How can I help you with your home service needs today?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_endpointing_ms: int = 300
    deepgram_utterance_end_ms: int = 1000

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "openai"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    function_calling_enabled: bool = True

    # TTS
    tts_provider: str = "cartesia"  # "cartesia" | "openai"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model: str = "sonic-english"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Turn-taking
    silence_debounce_ms: int = 800
    min_speech_length: int = 3
    ack_cooldown_ms: int = 300
    max_acks_per_utterance: int = 1
    min_detail_turns: int = 4
    # 0 keeps the ordering buffer waiting indefinitely for a missing fragment.
    ordering_skip_timeout_ms: int = 0

    # Intake
    contractors_file: str = "contractors.json"
    greeting_text: str = DEFAULT_GREETING

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/connection"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        tts = (self.tts_provider or "cartesia").strip().lower()
        if tts not in ("cartesia", "openai"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'cartesia' or 'openai'."
            )
        if tts == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        if (provider == "openai" or tts == "openai") and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.silence_debounce_ms <= 0:
            raise ConfigError("SILENCE_DEBOUNCE_MS must be positive.")
        if self.ordering_skip_timeout_ms < 0:
            raise ConfigError("ORDERING_SKIP_TIMEOUT_MS must not be negative.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            tts_provider=self.tts_provider,
            deepgram_model=self.deepgram_model,
            silence_debounce_ms=self.silence_debounce_ms,
            ack_cooldown_ms=self.ack_cooldown_ms,
            max_acks_per_utterance=self.max_acks_per_utterance,
            min_detail_turns=self.min_detail_turns,
            ordering_skip_timeout_ms=self.ordering_skip_timeout_ms,
            function_calling_enabled=self.function_calling_enabled,
            contractors_file=self.contractors_file,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", os.getenv("SERVER", "")),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        function_calling_enabled=_get_bool("FUNCTION_CALLING_ENABLED", True),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "cartesia").strip().lower(),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model=os.getenv("CARTESIA_MODEL", "sonic-english"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Turn-taking
        silence_debounce_ms=_get_int("SILENCE_DEBOUNCE_MS", 800),
        min_speech_length=_get_int("MIN_SPEECH_LENGTH", 3),
        ack_cooldown_ms=_get_int("ACK_COOLDOWN_MS", 300),
        max_acks_per_utterance=_get_int("MAX_ACKS_PER_UTTERANCE", 1),
        min_detail_turns=_get_int("MIN_DETAIL_TURNS", 4),
        ordering_skip_timeout_ms=_get_int("ORDERING_SKIP_TIMEOUT_MS", 0),

        # Intake
        contractors_file=os.getenv("CONTRACTORS_FILE", "contractors.json"),
        greeting_text=os.getenv("GREETING_TEXT", DEFAULT_GREETING),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
