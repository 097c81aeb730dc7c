from __future__ import annotations

import pytest
from pydantic import ValidationError

from urlcache.common.settings import DEFAULT_USER_AGENT, ProxySettings


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("URLCACHE_API_TOKEN", "env-token")
    monkeypatch.setenv("URLCACHE_FALLBACK_URL", "https://fallback.example.com/")
    monkeypatch.setenv("URLCACHE_WRITE_POLICY", " Background ")
    monkeypatch.setenv("URLCACHE_COALESCE_REQUESTS", "true")

    settings = ProxySettings()

    assert settings.api_token.get_secret_value() == "env-token"
    assert settings.write_policy == "background"
    assert settings.redirect_policy == "failure"
    assert settings.coalesce_requests is True
    assert settings.default_user_agent == DEFAULT_USER_AGENT
    assert settings.origin_timeout_seconds is None


def test_settings_reject_unknown_policy() -> None:
    with pytest.raises(ValidationError):
        ProxySettings(api_token="t", fallback_url="http://fallback.test/", redirect_policy="sometimes")


def test_settings_require_absolute_fallback() -> None:
    with pytest.raises(ValidationError):
        ProxySettings(api_token="t", fallback_url="/relative")
