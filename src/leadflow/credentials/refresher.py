"""Platform token renewal.

Per credential:
1. Exchange the stored refresh token (or the current primary token) for a
   renewed long-lived token.
2. Instagram / Facebook: re-derive the page token with the renewed user
   token via /me/accounts.
3. Save. If step 2 fails, the step-1 result is saved alone and the outcome
   is PARTIAL.

Refreshes of the same key never run concurrently.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from leadflow.errors import LeadflowError, UpstreamError
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from .models import (
    CredentialKey,
    CredentialPatch,
    FacebookCredentials,
    GrantUpdate,
    InstagramCredentials,
    LinkedInCredentials,
    Platform,
)
from .platform_api import META_DEFAULT_EXPIRES_IN, LinkedInClient, MetaGraphClient
from .store import TokenStore

logger = get_logger(__name__)


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshResult:
    key: CredentialKey
    outcome: RefreshOutcome
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**self.key.to_dict(), "outcome": self.outcome.value, "reason": self.reason}


@dataclass
class RefreshSummary:
    refreshed: int = 0
    partial: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[RefreshResult] = field(default_factory=list)

    def record(self, result: RefreshResult) -> None:
        self.results.append(result)
        current = getattr(self, result.outcome.value)
        setattr(self, result.outcome.value, current + 1)

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshed": self.refreshed,
            "partial": self.partial,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class _PageDerivationError(Exception):
    pass


class TokenRefresher:
    def __init__(
        self,
        store: TokenStore,
        meta: MetaGraphClient,
        linkedin: LinkedInClient,
    ) -> None:
        self._store = store
        self._meta = meta
        self._linkedin = linkedin
        self._locks: weakref.WeakValueDictionary[CredentialKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: CredentialKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def refresh(self, key: CredentialKey) -> RefreshResult:
        """Refresh one credential. Failures become a FAILED result."""
        async with self._lock_for(key):
            try:
                result = await self._refresh_locked(key)
            except LeadflowError as exc:
                result = RefreshResult(key, RefreshOutcome.FAILED, exc.message)

        log = logger.warning if result.outcome == RefreshOutcome.FAILED else logger.info
        log(
            "token refresh finished",
            extra={
                "extra_fields": safe_log_context(
                    platform=key.platform.value,
                    outcome=result.outcome.value,
                    reason=result.reason,
                )
            },
        )
        return result

    async def refresh_many(self, keys: Iterable[CredentialKey]) -> RefreshSummary:
        summary = RefreshSummary()
        for key in keys:
            try:
                result = await self.refresh(key)
            except Exception as exc:
                logger.exception(
                    "unexpected error refreshing credentials",
                    extra={"extra_fields": safe_log_context(platform=key.platform.value)},
                )
                result = RefreshResult(key, RefreshOutcome.FAILED, type(exc).__name__)
            summary.record(result)

        logger.info(
            "token refresh run finished",
            extra={
                "extra_fields": safe_log_context(
                    refreshed=summary.refreshed,
                    partial=summary.partial,
                    skipped=summary.skipped,
                    failed=summary.failed,
                )
            },
        )
        return summary

    async def _refresh_locked(self, key: CredentialKey) -> RefreshResult:
        bundle = await self._store.load(key)
        if bundle is None:
            return RefreshResult(key, RefreshOutcome.SKIPPED, "no_credentials")

        if isinstance(bundle, (InstagramCredentials, FacebookCredentials)):
            return await self._refresh_meta(bundle)
        if isinstance(bundle, LinkedInCredentials):
            return await self._refresh_linkedin(bundle)
        raise TypeError(f"unsupported credential bundle: {type(bundle).__name__}")

    async def _refresh_meta(
        self, bundle: InstagramCredentials | FacebookCredentials
    ) -> RefreshResult:
        key = bundle.key
        if bundle.user_token is None:
            return RefreshResult(key, RefreshOutcome.SKIPPED, "no_primary_token")

        stored_refresh = bundle.refresh_token.token if bundle.refresh_token else None
        body = await self._meta.exchange_long_lived(stored_refresh or bundle.user_token.token)
        new_token = body.get("access_token")
        if not new_token:
            raise UpstreamError("token exchange returned no access_token", details=body)
        expires_in = int(body.get("expires_in") or META_DEFAULT_EXPIRES_IN)

        new_refresh = body.get("refresh_token")
        refresh_update = (
            GrantUpdate(new_refresh) if new_refresh and new_refresh != stored_refresh else None
        )
        user_patch = CredentialPatch(
            user_token=GrantUpdate(new_token, expires_in),
            refresh_token=refresh_update,
        )

        try:
            page = await self._derive_page(bundle, new_token)
            full_patch = CredentialPatch(
                user_token=user_patch.user_token,
                refresh_token=refresh_update,
                page_token=GrantUpdate(page["access_token"], expires_in),
                page_id=page["id"],
                page_name=page.get("name") if isinstance(page.get("name"), str) else None,
            )
        except (UpstreamError, _PageDerivationError) as exc:
            logger.warning(
                "page token re-derivation failed, saving user token only",
                extra={
                    "extra_fields": safe_log_context(
                        platform=key.platform.value, error=str(exc)
                    )
                },
            )
            await self._store.save(key, user_patch)
            return RefreshResult(key, RefreshOutcome.PARTIAL, "page_token_unavailable")

        await self._store.save(key, full_patch)
        return RefreshResult(key, RefreshOutcome.REFRESHED)

    async def _derive_page(
        self, bundle: InstagramCredentials | FacebookCredentials, user_token: str
    ) -> dict[str, Any]:
        listed = [_usable_page(p) for p in await self._meta.list_pages(user_token)]
        pages = [p for p in listed if p is not None]
        if not pages:
            raise _PageDerivationError("no pages with an id and access token")

        by_stored_id = next((p for p in pages if p["id"] == bundle.page_id), None)

        if bundle.platform == Platform.FACEBOOK:
            return by_stored_id or pages[0]

        account_id = bundle.key.platform_account_id
        for page in pages:
            linked = page.get("instagram_business_account")
            if isinstance(linked, dict) and str(linked.get("id")) == account_id:
                return page
        # Page listings without the linked-account field: ask each page
        for page in pages:
            if "instagram_business_account" in page:
                continue
            linked = await self._meta.page_instagram_account(page["id"], page["access_token"])
            if linked and str(linked.get("id")) == account_id:
                return page
        if by_stored_id is not None:
            return by_stored_id
        raise _PageDerivationError("no page linked to the instagram account")

    async def _refresh_linkedin(self, bundle: LinkedInCredentials) -> RefreshResult:
        key = bundle.key
        if bundle.access_token is None:
            return RefreshResult(key, RefreshOutcome.SKIPPED, "no_primary_token")
        if bundle.refresh_token is None:
            return RefreshResult(key, RefreshOutcome.SKIPPED, "no_refresh_token")

        body = await self._linkedin.refresh(bundle.refresh_token.token)
        new_token = body.get("access_token")
        if not new_token:
            raise UpstreamError("token refresh returned no access_token", details=body)

        new_refresh = body.get("refresh_token")
        expires_in = body.get("expires_in")
        await self._store.save(
            key,
            CredentialPatch(
                access_token=GrantUpdate(new_token, int(expires_in) if expires_in else None),
                refresh_token=(
                    GrantUpdate(new_refresh, _optional_int(body.get("refresh_token_expires_in")))
                    if new_refresh
                    else None
                ),
            ),
        )
        return RefreshResult(key, RefreshOutcome.REFRESHED)


def _usable_page(page: Any) -> dict[str, Any] | None:
    """Page entry with a string id and a non-empty token, else None."""
    if not isinstance(page, dict):
        return None
    page_id, token = page.get("id"), page.get("access_token")
    if isinstance(page_id, int) and not isinstance(page_id, bool):
        page_id = str(page_id)
    if not isinstance(page_id, str) or not page_id:
        return None
    if not isinstance(token, str) or not token:
        return None
    return {**page, "id": page_id}


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None
