"""Test helpers: fixed clock, settings, Meta payload builders, platform stub."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from leadflow.config import LinkedInAppConfig, MetaAppConfig, Settings

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

GRAPH = "graph.facebook.com/v21.0"
INSTAGRAM_GRAPH = "graph.instagram.com"
LINKEDIN_TOKEN = "www.linkedin.com/oauth/v2/accessToken"


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ledger_snapshot_path": tmp_path / "messages.json",
        "token_store_dir": tmp_path / "tokens",
        "webhook_verify_token": "verify-me",
        "meta": MetaAppConfig(
            app_id="app-id",
            app_secret="app-secret",
            whatsapp_business_account_id="waba-1",
        ),
        "linkedin": LinkedInAppConfig(
            client_id="li-id",
            client_secret="li-secret",
            redirect_uri="http://localhost:3000/linkedin/callback",
        ),
        "token_refresh_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


# ── Meta webhook payloads ─────────────────────────────────────────────────────


def inbound_message(
    message_id: str,
    sender: str = "917359275948",
    text: str = "Hello",
    timestamp: str | None = "1704067200",
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "from": sender,
        "id": message_id,
        "type": "text",
        "text": {"body": text},
    }
    if timestamp is not None:
        message["timestamp"] = timestamp
    return message


def status_report(
    message_id: str, status: str, recipient: str = "917359275948"
) -> dict[str, Any]:
    return {
        "id": message_id,
        "status": status,
        "recipient_id": recipient,
        "timestamp": "1704067300",
    }


def whatsapp_payload(
    messages: list[dict[str, Any]] | None = None,
    statuses: list[dict[str, Any]] | None = None,
    contacts: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550000000", "phone_number_id": "123456789"},
    }
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


# ── Platform HTTP stub ────────────────────────────────────────────────────────

Handler = Callable[[httpx.Request], httpx.Response]


class PlatformStub:
    """Routes (method, host+path) to canned JSON responses and records calls."""

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, body: Any = None, status: int = 200) -> None:
        """Queue a response; the last queued response for a route repeats."""
        self._routes.setdefault((method, url), []).append((status, body))

    def add_handler(self, method: str, url: str, handler: Handler) -> None:
        self._routes.setdefault((method, url), []).append(handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.host}{request.url.path}")
        queued = self._routes.get(key)
        if not queued:
            return httpx.Response(404, json={"error": {"message": f"no stub for {key}"}})
        entry = queued.pop(0) if len(queued) > 1 else queued[0]
        if callable(entry):
            return entry(request)
        status, body = entry
        return httpx.Response(status, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if f"{r.url.host}{r.url.path}" == url]


def make_app(tmp_path: Path, stub: PlatformStub | None = None, clock=None, **overrides: Any):
    """Build (app, services) wired to tmp_path storage and an optional stub."""
    from leadflow.api.factory import create_app
    from leadflow.api.services import build_services

    settings = make_settings(tmp_path, **overrides)
    services = build_services(
        settings,
        http=(stub or PlatformStub()).client(),
        clock=clock or FixedClock(),
    )
    return create_app(services=services), services
