"""Service container owned by the FastAPI application.

create_app() builds one Services instance and keeps it on app.state; route
handlers reach it through the get_services dependency so tests can hand
create_app() a container wired with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import Request

from leadflow.config import Settings
from leadflow.credentials.onboarding import CredentialOnboarding
from leadflow.credentials.platform_api import LinkedInClient, MetaGraphClient, build_http_client
from leadflow.credentials.refresher import TokenRefresher
from leadflow.credentials.scheduler import RefreshScheduler
from leadflow.credentials.store import TokenStore, build_token_store
from leadflow.infra.time import Clock, utc_now
from leadflow.messaging.ledger import MessageLedger
from leadflow.messaging.live import LiveUpdateHub
from leadflow.messaging.processor import WebhookProcessor


@dataclass
class Services:
    settings: Settings
    ledger: MessageLedger
    hub: LiveUpdateHub
    processor: WebhookProcessor
    token_store: TokenStore
    onboarding: CredentialOnboarding
    refresher: TokenRefresher
    scheduler: RefreshScheduler
    http: httpx.AsyncClient


def build_services(
    settings: Settings,
    *,
    http: httpx.AsyncClient | None = None,
    token_store: TokenStore | None = None,
    clock: Clock = utc_now,
) -> Services:
    """Wire every component from settings.

    Args:
        settings: Runtime settings.
        http: Client for platform calls (tests pass one on a MockTransport).
        token_store: Pre-built store; built from settings when omitted.
        clock: Time source shared by every component.
    """
    http = http or build_http_client(settings.platform_http_timeout)
    ledger = MessageLedger(
        settings.ledger_snapshot_path,
        max_per_contact=settings.ledger_max_per_contact,
    )
    hub = LiveUpdateHub()
    store = token_store or build_token_store(
        settings.token_store_backend,
        directory=settings.token_store_dir,
        database_url=settings.database_url,
        encryption_key=settings.tokens_encryption_key,
        clock=clock,
    )
    meta = MetaGraphClient(http, settings.meta)
    linkedin = LinkedInClient(http, settings.linkedin)
    refresher = TokenRefresher(store, meta, linkedin)

    return Services(
        settings=settings,
        ledger=ledger,
        hub=hub,
        processor=WebhookProcessor(ledger, hub, clock=clock),
        token_store=store,
        onboarding=CredentialOnboarding(
            store, meta, linkedin, frontend_url=settings.frontend_url, clock=clock
        ),
        refresher=refresher,
        scheduler=RefreshScheduler(
            store,
            refresher,
            interval=timedelta(days=settings.token_refresh_interval_days),
            cron=settings.token_refresh_cron,
            clock=clock,
        ),
        http=http,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the application's service container."""
    return request.app.state.services
