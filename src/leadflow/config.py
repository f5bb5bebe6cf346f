"""Service configuration loaded from environment variables.

All settings are read once at startup into a frozen Settings instance;
components receive the values they need instead of reading os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

DEFAULT_GRAPH_API_VERSION = "v21.0"
DEFAULT_REFRESH_CRON = "0 2 * * 0"  # weekly, Sunday 02:00
DEFAULT_REFRESH_INTERVAL_DAYS = 50.0


@dataclass(frozen=True)
class MetaAppConfig:
    """Meta (Facebook/Instagram/WhatsApp) app credentials."""

    app_id: str | None = None
    app_secret: str | None = None
    graph_api_version: str = DEFAULT_GRAPH_API_VERSION
    whatsapp_business_account_id: str | None = None


@dataclass(frozen=True)
class LinkedInAppConfig:
    """LinkedIn OAuth app credentials."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the whole service."""

    ledger_snapshot_path: Path = Path("data/messages.json")
    ledger_max_per_contact: int = 1000
    token_store_backend: Literal["file", "postgres"] = "file"
    token_store_dir: Path = Path("data/tokens")
    database_url: str | None = None
    tokens_encryption_key: str | None = None
    webhook_verify_token: str = ""
    webhook_app_secret: str | None = None
    meta: MetaAppConfig = field(default_factory=MetaAppConfig)
    linkedin: LinkedInAppConfig = field(default_factory=LinkedInAppConfig)
    frontend_url: str = "http://localhost:3000"
    platform_http_timeout: float = 15.0
    token_refresh_enabled: bool = True
    token_refresh_cron: str = DEFAULT_REFRESH_CRON
    token_refresh_interval_days: float = DEFAULT_REFRESH_INTERVAL_DAYS
    jwt_secret: str | None = None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_settings() -> Settings:
    """Build Settings from the environment.

    Raises:
        ValueError: If a numeric or enumerated variable has an invalid value.
    """
    backend = os.environ.get("TOKEN_STORE_BACKEND", "file").lower()
    if backend not in ("file", "postgres"):
        raise ValueError(f"Unknown TOKEN_STORE_BACKEND: {backend}")

    return Settings(
        ledger_snapshot_path=Path(os.environ.get("LEDGER_SNAPSHOT_PATH", "data/messages.json")),
        ledger_max_per_contact=_env_int("LEDGER_MAX_PER_CONTACT", 1000),
        token_store_backend=backend,  # type: ignore[arg-type]
        token_store_dir=Path(os.environ.get("TOKEN_STORE_DIR", "data/tokens")),
        database_url=os.environ.get("DATABASE_URL") or None,
        tokens_encryption_key=os.environ.get("TOKENS_ENCRYPTION_KEY") or None,
        webhook_verify_token=os.environ.get("WEBHOOK_VERIFY_TOKEN", ""),
        webhook_app_secret=os.environ.get("META_APP_SECRET") or None,
        meta=MetaAppConfig(
            app_id=os.environ.get("FACEBOOK_APP_ID") or None,
            app_secret=os.environ.get("FACEBOOK_APP_SECRET") or None,
            graph_api_version=os.environ.get("GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION),
            whatsapp_business_account_id=os.environ.get("WHATSAPP_BUSINESS_ACCOUNT_ID") or None,
        ),
        linkedin=LinkedInAppConfig(
            client_id=os.environ.get("LINKEDIN_CLIENT_ID") or None,
            client_secret=os.environ.get("LINKEDIN_CLIENT_SECRET") or None,
            redirect_uri=os.environ.get("LINKEDIN_REDIRECT_URI") or None,
        ),
        frontend_url=os.environ.get("FRONTEND_URL", "http://localhost:3000"),
        platform_http_timeout=_env_float("PLATFORM_HTTP_TIMEOUT", 15.0),
        token_refresh_enabled=_env_bool("TOKEN_REFRESH_ENABLED", True),
        token_refresh_cron=os.environ.get("TOKEN_REFRESH_CRON", DEFAULT_REFRESH_CRON),
        token_refresh_interval_days=_env_float(
            "TOKEN_REFRESH_INTERVAL_DAYS", DEFAULT_REFRESH_INTERVAL_DAYS
        ),
        jwt_secret=os.environ.get("JWT_SECRET") or None,
    )
