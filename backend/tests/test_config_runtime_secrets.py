from __future__ import annotations

import os

from chathub_web.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def _production_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "manager_session_secret": "prod-session-secret-001",
        "csrf_secret": "prod-csrf-secret-001",
        "resume_token_secret": "prod-resume-secret-001",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def test_get_settings_reads_rate_limit_and_token_lifetimes() -> None:
    previous = {
        "RATE_LIMIT_TTL": _set_env("RATE_LIMIT_TTL", "30"),
        "RATE_LIMIT_LIMIT": _set_env("RATE_LIMIT_LIMIT", "5"),
        "RESUME_TOKEN_TTL_DAYS": _set_env("RESUME_TOKEN_TTL_DAYS", "not-a-number"),
        "CSRF_TOKEN_TTL_HOURS": _set_env("CSRF_TOKEN_TTL_HOURS", "0"),
        "TRUSTED_PROXY_IPS": _set_env("TRUSTED_PROXY_IPS", "10.0.0.1, ,10.0.0.2"),
        "PUSH_SENDER_TYPE": _set_env("PUSH_SENDER_TYPE", "carrier-pigeon"),
    }
    try:
        settings = get_settings()
        assert settings.rate_limit_ttl_seconds == 30
        assert settings.rate_limit_max_requests == 5
        assert settings.resume_token_ttl_days == 180
        assert settings.csrf_token_ttl_hours == 24
        assert settings.trusted_proxy_ips == ("10.0.0.1", "10.0.0.2")
        assert settings.push_sender_type == "stub"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_default_secrets_are_reported() -> None:
    issues = runtime_secret_issues(Settings())

    assert any("MANAGER_SESSION_SECRET" in issue for issue in issues)
    assert any("CSRF_SECRET" in issue for issue in issues)
    assert any("RESUME_TOKEN_SECRET" in issue for issue in issues)


def test_production_secrets_pass() -> None:
    assert runtime_secret_issues(_production_settings()) == ()


def test_resume_secret_must_differ_from_csrf_secret() -> None:
    issues = runtime_secret_issues(_production_settings(resume_token_secret="prod-csrf-secret-001"))

    assert issues == ("RESUME_TOKEN_SECRET must differ from CSRF_SECRET",)


def test_postgres_backend_requires_database_url() -> None:
    issues = runtime_secret_issues(_production_settings(conversation_store_backend="postgres"))

    assert any("DATABASE_URL is required" in issue for issue in issues)


def test_http_push_without_credentials_is_reported() -> None:
    issues = runtime_secret_issues(_production_settings(push_sender_type="http"))

    assert any("PUSH_API_BASE_URL and PUSH_API_KEY" in issue for issue in issues)
    assert runtime_secret_issues(
        _production_settings(push_sender_type="http", push_api_base_url="https://push.test", push_api_key="key")
    ) == ()
