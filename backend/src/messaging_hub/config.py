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


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


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
    app_name: str = "Messaging Hub"
    store_backend: str = "inmemory"
    database_url: str = ""
    principal_token_secret: str = "dev-principal-secret"
    operator_roles: tuple[str, ...] = ("tenant_admin", "tenant_agent")
    channel_admin_roles: tuple[str, ...] = ("tenant_admin",)
    inbound_dedup_enabled: bool = True
    telegram_api_base_url: str = "https://api.telegram.org"
    telegram_mock_token_prefix: str = "test_"
    provider_timeout_seconds: float = 10.0
    webhook_secret_mode: str = "off"
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:5173",)
    log_level: str = "INFO"
    runtime_secret_guard_mode: str = "warn"

    @property
    def uses_sql_store(self) -> bool:
        return self.store_backend.strip().lower() == "sql"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("HUB_APP_NAME", "Messaging Hub"),
        store_backend=_normalize_mode(
            os.getenv("HUB_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "sql"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        principal_token_secret=os.getenv("PRINCIPAL_TOKEN_SECRET", "dev-principal-secret"),
        operator_roles=_as_csv_tuple(os.getenv("OPERATOR_ROLES"), ("tenant_admin", "tenant_agent")),
        channel_admin_roles=_as_csv_tuple(os.getenv("CHANNEL_ADMIN_ROLES"), ("tenant_admin",)),
        inbound_dedup_enabled=_as_bool(os.getenv("INBOUND_DEDUP_ENABLED"), True),
        telegram_api_base_url=os.getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org"),
        telegram_mock_token_prefix=os.getenv("TELEGRAM_MOCK_TOKEN_PREFIX", "test_"),
        provider_timeout_seconds=_as_float(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 10.0),
        webhook_secret_mode=_normalize_mode(
            os.getenv("WEBHOOK_SECRET_MODE"),
            default="off",
            allowed={"off", "log_only", "enforce"},
        ),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"), ("http://localhost:5173",)),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.principal_token_secret,
        defaults={"dev-principal-secret", "change-me-in-production"},
    ):
        issues.append("PRINCIPAL_TOKEN_SECRET is empty or uses a development placeholder")
    if settings.uses_sql_store and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when HUB_STORE_BACKEND=sql")
    if settings.provider_timeout_seconds <= 0:
        issues.append("PROVIDER_TIMEOUT_SECONDS must be greater than zero")
    return tuple(issues)
