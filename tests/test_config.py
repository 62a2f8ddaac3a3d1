"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest

from src.intake.config import DEFAULT_GREETING, ConfigError, get_config, init_config


def _reload(**env):
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        return get_config()


def test_defaults_match_reference_turn_taking():
    config = get_config()

    assert config.silence_debounce_ms == 800
    assert config.min_speech_length == 3
    assert config.ack_cooldown_ms == 300
    assert config.max_acks_per_utterance == 1
    assert config.min_detail_turns == 4
    assert config.ordering_skip_timeout_ms == 0
    assert config.greeting_text == DEFAULT_GREETING


def test_ws_url_uses_public_host():
    assert get_config().ws_url == "wss://test.ngrok.io/connection"


def test_server_is_accepted_as_public_host_fallback():
    with patch.dict(os.environ, {"SERVER": "fallback.example.com"}):
        os.environ.pop("PUBLIC_HOST", None)
        get_config.cache_clear()
        assert get_config().public_host == "fallback.example.com"


def test_invalid_numbers_fall_back_to_defaults():
    config = _reload(SILENCE_DEBOUNCE_MS="soon", LLM_TEMPERATURE="warm")

    assert config.silence_debounce_ms == 800
    assert config.llm_temperature == 0.7


def test_boolean_parsing():
    assert _reload(FUNCTION_CALLING_ENABLED="off").function_calling_enabled is False
    assert _reload(FUNCTION_CALLING_ENABLED="yes").function_calling_enabled is True


def test_llm_model_follows_provider():
    assert _reload(LLM_PROVIDER="openai", OPENAI_MODEL="gpt-4o").llm_model == "gpt-4o"
    assert _reload(LLM_PROVIDER="groq", GROQ_API_KEY="k", GROQ_MODEL="llama").llm_model == "llama"


def test_init_config_validates():
    assert init_config().public_host == "test.ngrok.io"


def test_missing_keys_are_reported():
    config = _reload(DEEPGRAM_API_KEY="", OPENAI_API_KEY="")

    with pytest.raises(ConfigError) as exc:
        config.validate()

    assert "DEEPGRAM_API_KEY" in str(exc.value)
    assert "OPENAI_API_KEY" in str(exc.value)


def test_groq_requires_its_key():
    config = _reload(LLM_PROVIDER="groq", GROQ_API_KEY="")

    with pytest.raises(ConfigError, match="GROQ_API_KEY"):
        config.validate()


@pytest.mark.parametrize(
    "env",
    [
        {"LLM_PROVIDER": "anthropic"},
        {"TTS_PROVIDER": "espeak"},
        {"SILENCE_DEBOUNCE_MS": "0"},
        {"ORDERING_SKIP_TIMEOUT_MS": "-5"},
    ],
)
def test_invalid_settings_are_rejected(env):
    config = _reload(**env)

    with pytest.raises(ConfigError):
        config.validate()


def test_package_exposes_config_lazily():
    import src.intake as intake

    assert intake.get_config is get_config
    assert isinstance(intake.get_config(), intake.Config)
    with pytest.raises(AttributeError):
        intake.load_everything


def test_twilio_credentials_are_optional():
    config = _reload(TWILIO_ACCOUNT_SID="")

    config.validate()
    assert not hasattr(config, "twilio_auth_token")
