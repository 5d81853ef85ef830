import pydantic
import pytest

from sportmatch.settings import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SPORTMATCH_API_URL", "API_URL", "SPORTMATCH_WS_URL", "WS_URL", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.api_base_url == "http://localhost:8080/api"
    assert settings.ws_url == "http://localhost:8080/ws"
    assert settings.request_timeout == 10.0
    assert (settings.heartbeat_outgoing_ms, settings.heartbeat_incoming_ms) == (4000, 4000)
    assert settings.candidate_page_size == 10
    assert settings.on_validation_network_error == "fail-open"


def test_env_aliases_and_trailing_slash(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPORTMATCH_API_URL", "https://api.example.com/api/ ")
    monkeypatch.setenv("ON_VALIDATION_NETWORK_ERROR", "fail-closed")

    settings = Settings(_env_file=None)

    assert settings.api_base_url == "https://api.example.com/api"
    assert settings.on_validation_network_error == "fail-closed"


def test_rejects_unknown_validation_policy() -> None:
    with pytest.raises(pydantic.ValidationError):
        Settings(_env_file=None, on_validation_network_error="maybe")
