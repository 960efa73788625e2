import pytest

from mcpwire.shared.settings import Settings


def test_defaults():
    settings = Settings()
    assert settings.request_timeout is None
    assert settings.reset_timeout_on_progress is True
    assert settings.implicit_completions is False
    assert settings.streamable_http_path == "/mcp"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MCPWIRE_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("MCPWIRE_IMPLICIT_COMPLETIONS", "true")
    monkeypatch.setenv("MCPWIRE_LOG_LEVEL", "DEBUG")

    settings = Settings()

    assert settings.request_timeout == 12.5
    assert settings.implicit_completions is True
    assert settings.log_level == "DEBUG"


def test_timeouts_must_be_positive():
    with pytest.raises(ValueError):
        Settings(request_timeout=0)
