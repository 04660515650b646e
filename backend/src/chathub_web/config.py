from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Chat Hub"
    api_prefix: str = "/api/v1"
    frontend_base_url: str = "http://localhost:3000"
    conversation_store_backend: str = "inmemory"
    database_url: str = ""
    manager_session_secret: str = "dev-session-secret"
    csrf_secret: str = "dev-csrf-secret"
    csrf_token_ttl_hours: int = 24
    resume_token_secret: str = "dev-resume-secret"
    resume_token_ttl_days: int = 180
    cookie_secure: bool = True
    rate_limit_ttl_seconds: int = 60
    rate_limit_max_requests: int = 10
    trust_proxy_headers: bool = False
    trusted_proxy_ips: tuple[str, ...] = ()
    push_sender_type: str = "stub"
    push_api_base_url: str = ""
    push_api_key: str = ""
    push_timeout_seconds: int = 10
    notification_workers: int = 2
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"

    def push_delivery_configured(self) -> bool:
        if self.push_sender_type != "http":
            return True
        return bool(self.push_api_base_url.strip() and self.push_api_key.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CHATHUB_APP_NAME", "Chat Hub"),
        api_prefix=os.getenv("CHATHUB_API_PREFIX", "/api/v1"),
        frontend_base_url=os.getenv("FRONTEND_BASE_URL", "http://localhost:3000"),
        conversation_store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        manager_session_secret=os.getenv("MANAGER_SESSION_SECRET", "dev-session-secret"),
        csrf_secret=os.getenv("CSRF_SECRET", "dev-csrf-secret"),
        csrf_token_ttl_hours=_as_int(os.getenv("CSRF_TOKEN_TTL_HOURS"), 24, minimum=1),
        resume_token_secret=os.getenv("RESUME_TOKEN_SECRET", "dev-resume-secret"),
        resume_token_ttl_days=_as_int(os.getenv("RESUME_TOKEN_TTL_DAYS"), 180, minimum=1),
        cookie_secure=_as_bool(os.getenv("COOKIE_SECURE"), True),
        rate_limit_ttl_seconds=_as_int(os.getenv("RATE_LIMIT_TTL"), 60, minimum=1),
        rate_limit_max_requests=_as_int(os.getenv("RATE_LIMIT_LIMIT"), 10, minimum=1),
        trust_proxy_headers=_as_bool(os.getenv("TRUST_PROXY_HEADERS"), False),
        trusted_proxy_ips=_as_csv_tuple(os.getenv("TRUSTED_PROXY_IPS")),
        push_sender_type=_normalize_mode(
            os.getenv("PUSH_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        push_api_base_url=os.getenv("PUSH_API_BASE_URL", ""),
        push_api_key=os.getenv("PUSH_API_KEY", ""),
        push_timeout_seconds=_as_int(os.getenv("PUSH_TIMEOUT_SECONDS"), 10, minimum=1),
        notification_workers=_as_int(os.getenv("NOTIFICATION_WORKERS"), 2, minimum=1),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.manager_session_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("MANAGER_SESSION_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.csrf_secret,
        defaults={"dev-csrf-secret", "dev-secret", "change-me-in-production"},
    ):
        issues.append("CSRF_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.resume_token_secret,
        defaults={"dev-resume-secret", "dev-secret", "change-me-in-production"},
    ):
        issues.append("RESUME_TOKEN_SECRET is empty or uses a development placeholder")
    if settings.resume_token_secret.strip() and settings.resume_token_secret == settings.csrf_secret:
        issues.append("RESUME_TOKEN_SECRET must differ from CSRF_SECRET")
    if settings.conversation_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when CONVERSATION_STORE_BACKEND=postgres")
    if not settings.push_delivery_configured():
        issues.append(
            "PUSH_API_BASE_URL and PUSH_API_KEY are required when PUSH_SENDER_TYPE=http; "
            "notifications will be skipped"
        )
    return tuple(issues)
