"""Test suite for environment-driven settings."""

from gyb_chat.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GYB_STORE_BACKEND", raising=False)
    settings = Settings(_env_file=None)

    assert settings.store_backend == "memory"
    assert settings.llm_provider == "openai"
    assert settings.openai_api_key is None
    assert settings.queue_timeout > settings.poll_max_wait


def test_environment_overrides(monkeypatch):
    """Prefixed variables are read and coerced; API keys keep their vendor names."""
    monkeypatch.setenv("GYB_STORE_BACKEND", "sql")
    monkeypatch.setenv("GYB_POLL_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("GYB_TEMPERATURE", "0.2")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    settings = Settings(_env_file=None)

    assert settings.store_backend == "sql"
    assert settings.poll_max_attempts == 7
    assert settings.temperature == 0.2
    assert settings.openai_api_key == "sk-test"


def test_keyword_arguments_win(monkeypatch):
    monkeypatch.setenv("GYB_RATE_LIMIT", "5")
    settings = Settings(_env_file=None, rate_limit=1000, openai_api_key="sk-direct")

    assert settings.rate_limit == 1000
    assert settings.openai_api_key == "sk-direct"
