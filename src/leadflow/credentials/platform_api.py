"""HTTP clients for the Meta Graph API and LinkedIn OAuth endpoints.

Security: tokens and codes are sent as query/form parameters and are
NEVER logged. Only operation names, status codes and error types are.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from leadflow.config import LinkedInAppConfig, MetaAppConfig
from leadflow.errors import ConfigurationError, UpstreamError
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Retry config: one retry on network errors and 5xx
MAX_RETRIES = 1
RETRY_DELAY = 0.2

# Meta long-lived tokens last 60 days when expires_in is not reported
META_DEFAULT_EXPIRES_IN = 60 * 24 * 60 * 60

GRAPH_BASE_URL = "https://graph.facebook.com"
INSTAGRAM_GRAPH_URL = "https://graph.instagram.com"
LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"

PAGE_FIELDS = "id,name,access_token,instagram_business_account{id,username}"


def build_http_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout))


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("error_description"):
            return str(body["error_description"])
        if isinstance(error, str):
            return error
    return default


class _PlatformClient:
    platform = "platform"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Call a platform endpoint and return its decoded JSON body.

        Raises:
            UpstreamError: On network failure after retry, an HTTP error
                status, or an error object in the body.
        """
        log_ctx = {"platform": self.platform, "operation": operation}

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._http.request(
                    method, url, params=params, data=data, headers=headers
                )
            except httpx.TransportError as exc:
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "platform call failed, retrying",
                        extra={
                            "extra_fields": safe_log_context(
                                **log_ctx, attempt=attempt, error_type=type(exc).__name__
                            )
                        },
                    )
                    await asyncio.sleep(RETRY_DELAY)
                    continue
                logger.error(
                    "platform call failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, error_type=type(exc).__name__
                        )
                    },
                )
                raise UpstreamError(
                    f"{operation} failed: {type(exc).__name__}",
                    details={"operation": operation},
                ) from exc

            if response.status_code >= 500 and attempt < MAX_RETRIES:
                logger.warning(
                    "platform call returned 5xx, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, attempt=attempt, status=response.status_code
                        )
                    },
                )
                await asyncio.sleep(RETRY_DELAY)
                continue

            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text[:500]}

            if response.is_error or (isinstance(body, dict) and body.get("error")):
                logger.warning(
                    "platform call rejected",
                    extra={
                        "extra_fields": safe_log_context(**log_ctx, status=response.status_code)
                    },
                )
                raise UpstreamError(
                    _error_message(body, f"{operation} failed"),
                    status_code=response.status_code if response.is_error else None,
                    details=body,
                )
            return body

        # Loop always returns or raises
        raise UpstreamError(f"{operation} failed")


class MetaGraphClient(_PlatformClient):
    """Facebook / Instagram / WhatsApp Graph API calls."""

    platform = "meta"

    def __init__(
        self,
        http: httpx.AsyncClient,
        app: MetaAppConfig,
        *,
        base_url: str = GRAPH_BASE_URL,
        instagram_url: str = INSTAGRAM_GRAPH_URL,
    ) -> None:
        super().__init__(http)
        self._app = app
        self._base = f"{base_url.rstrip('/')}/{app.graph_api_version}"
        self._instagram = instagram_url.rstrip("/")

    def _app_credentials(self) -> dict[str, str]:
        if not self._app.app_id or not self._app.app_secret:
            raise ConfigurationError("Server configuration error: Meta app credentials not configured")
        return {"client_id": self._app.app_id, "client_secret": self._app.app_secret}

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """OAuth code -> short-lived user token."""
        params = {**self._app_credentials(), "redirect_uri": redirect_uri, "code": code}
        return await self._request(
            "GET", f"{self._base}/oauth/access_token", operation="exchange_code", params=params
        )

    async def exchange_long_lived(self, token: str) -> dict[str, Any]:
        """Token (or refresh token) -> long-lived user token."""
        params = {
            **self._app_credentials(),
            "grant_type": "fb_exchange_token",
            "fb_exchange_token": token,
        }
        return await self._request(
            "GET", f"{self._base}/oauth/access_token", operation="exchange_long_lived", params=params
        )

    async def get_me(self, token: str, fields: str = "id,name") -> dict[str, Any]:
        return await self._request(
            "GET",
            f"{self._base}/me",
            operation="get_me",
            params={"fields": fields, "access_token": token},
        )

    async def list_pages(self, user_token: str) -> list[dict[str, Any]]:
        """Pages the user manages, with page tokens and linked IG accounts."""
        body = await self._request(
            "GET",
            f"{self._base}/me/accounts",
            operation="list_pages",
            params={"fields": PAGE_FIELDS, "access_token": user_token},
        )
        pages = body.get("data") if isinstance(body, dict) else None
        return [p for p in pages or [] if isinstance(p, dict)]

    async def get_object(self, object_id: str, token: str, fields: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"{self._base}/{object_id}",
            operation="get_object",
            params={"fields": fields, "access_token": token},
        )

    async def page_instagram_account(self, page_id: str, page_token: str) -> dict[str, Any] | None:
        """Instagram business account linked to a page, if any."""
        body = await self.get_object(page_id, page_token, "instagram_business_account")
        account = body.get("instagram_business_account")
        return account if isinstance(account, dict) and account.get("id") else None

    async def instagram_me(self, token: str) -> dict[str, Any]:
        """Instagram Graph identity of a token."""
        return await self._request(
            "GET",
            f"{self._instagram}/me",
            operation="instagram_me",
            params={"fields": "id,username,account_type", "access_token": token},
        )

    async def whatsapp_business_account(self, token: str) -> dict[str, Any]:
        waba_id = self._app.whatsapp_business_account_id
        if not waba_id:
            raise ConfigurationError("WHATSAPP_BUSINESS_ACCOUNT_ID is not configured")
        return await self._request(
            "GET",
            f"{self._base}/{waba_id}",
            operation="whatsapp_business_account",
            headers={"Authorization": f"Bearer {token}"},
        )


class LinkedInClient(_PlatformClient):
    platform = "linkedin"

    def __init__(
        self,
        http: httpx.AsyncClient,
        app: LinkedInAppConfig,
        *,
        token_url: str = LINKEDIN_TOKEN_URL,
    ) -> None:
        super().__init__(http)
        self._app = app
        self._token_url = token_url

    def _app_credentials(self) -> dict[str, str]:
        if not self._app.client_id or not self._app.client_secret:
            raise ConfigurationError("Server configuration error: LinkedIn app not configured")
        return {"client_id": self._app.client_id, "client_secret": self._app.client_secret}

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> dict[str, Any]:
        redirect = redirect_uri or self._app.redirect_uri
        if not redirect:
            raise ConfigurationError("LINKEDIN_REDIRECT_URI is not configured")
        data = {
            **self._app_credentials(),
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect,
        }
        return await self._request("POST", self._token_url, operation="exchange_code", data=data)

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        data = {
            **self._app_credentials(),
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._request("POST", self._token_url, operation="refresh", data=data)
