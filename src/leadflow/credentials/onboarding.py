"""Credential onboarding: token verification and OAuth code exchanges.

Each exchange ends with a TokenStore.save(), so a successful exchange is
also the moment a credential bundle is created (or renewed).
"""

from __future__ import annotations

from typing import Any

from leadflow.errors import UpstreamError, ValidationError
from leadflow.infra.time import Clock, utc_now
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from .models import CredentialBundle, CredentialKey, CredentialPatch, GrantUpdate, Platform
from .platform_api import META_DEFAULT_EXPIRES_IN, LinkedInClient, MetaGraphClient
from .store import TokenStore

logger = get_logger(__name__)

VERIFIABLE_PLATFORMS = ("whatsapp", "instagram", "facebook")


def _require(value: str | None, message: str) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError(message)
    return value


def _access_token(body: dict[str, Any], operation: str) -> str:
    token = body.get("access_token")
    if not token:
        raise UpstreamError(f"{operation} returned no access_token", details=body)
    return token


class CredentialOnboarding:
    def __init__(
        self,
        store: TokenStore,
        meta: MetaGraphClient,
        linkedin: LinkedInClient,
        *,
        frontend_url: str,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._meta = meta
        self._linkedin = linkedin
        self._default_redirect = f"{frontend_url.rstrip('/')}/channels"
        self._clock = clock

    async def verify_token(self, platform: str, token: str | None) -> dict[str, Any]:
        """Check a pasted token against the platform and describe its account.

        Raises:
            ValidationError: Unknown platform, missing token, or no linked
                Instagram business account.
            UpstreamError: The platform rejected the token.
        """
        platform = (platform or "").lower()
        if platform not in VERIFIABLE_PLATFORMS:
            raise ValidationError(
                f"Unsupported platform: {platform}",
                details={"supported": list(VERIFIABLE_PLATFORMS)},
            )
        token = _require(token, "Token is required")

        if platform == "whatsapp":
            data = await self._meta.whatsapp_business_account(token)
            info = {"id": data.get("id"), "name": data.get("name")}
        elif platform == "facebook":
            data = await self._meta.get_me(token)
            info = {"id": data.get("id"), "name": data.get("name")}
        else:
            info = await self._verify_instagram(token)

        logger.info("platform token verified", extra={"extra_fields": safe_log_context(platform=platform)})
        return info

    async def _verify_instagram(self, token: str) -> dict[str, Any]:
        try:
            data = await self._meta.instagram_me(token)
            return {
                "instagram_account_id": data.get("id"),
                "instagram_username": data.get("username"),
                "account_type": data.get("account_type"),
            }
        except UpstreamError:
            logger.info("instagram graph rejected token, trying facebook graph")

        # Facebook user token: look for a page with a linked business account
        account = None
        page: dict[str, Any] | None = None
        try:
            for candidate in await self._meta.list_pages(token):
                linked = candidate.get("instagram_business_account")
                if isinstance(linked, dict) and linked.get("id"):
                    account, page = linked, candidate
                    break
        except UpstreamError:
            logger.info("token cannot list pages, trying it as a page token")

        if account is None:
            # Page token: the page itself is "me"
            me = await self._meta.get_me(token, "id,name,instagram_business_account")
            linked = me.get("instagram_business_account")
            if isinstance(linked, dict) and linked.get("id"):
                account, page = linked, me

        if account is None:
            raise ValidationError(
                "No Instagram Business Account found. Please ensure your Facebook Page "
                "is connected to an Instagram Business Account."
            )

        data = await self._meta.get_object(
            str(account["id"]), token, "id,username,name,profile_picture_url"
        )
        return {
            "instagram_account_id": data.get("id"),
            "instagram_username": data.get("username"),
            "instagram_name": data.get("name"),
            "profile_picture_url": data.get("profile_picture_url"),
            "page_id": page.get("id") if page else None,
            "page_name": page.get("name") if page else None,
        }

    async def _meta_user_token(
        self, code: str, redirect_uri: str | None
    ) -> tuple[str, int, str | None]:
        """code -> user token -> long-lived token.

        A failed long-lived exchange keeps the short-lived token.
        """
        short = await self._meta.exchange_code(code, redirect_uri or self._default_redirect)
        token = _access_token(short, "code exchange")
        expires_in = short.get("expires_in")
        refresh_token = None

        try:
            long_lived = await self._meta.exchange_long_lived(token)
        except UpstreamError as exc:
            logger.warning(
                "long-lived token exchange failed, keeping short-lived token",
                extra={"extra_fields": safe_log_context(error=exc.message)},
            )
        else:
            token = long_lived.get("access_token") or token
            expires_in = long_lived.get("expires_in") or expires_in
            refresh_token = long_lived.get("refresh_token")

        return token, int(expires_in or META_DEFAULT_EXPIRES_IN), refresh_token

    async def exchange_instagram_code(
        self, app_user_id: str, code: str, redirect_uri: str | None = None
    ) -> CredentialBundle:
        app_user_id = _require(app_user_id, "User ID is required")
        code = _require(code, "Authorization code is required")

        user_token, expires_in, refresh_token = await self._meta_user_token(code, redirect_uri)

        pages = [p for p in await self._meta.list_pages(user_token) if p.get("access_token")]
        if not pages:
            raise ValidationError(
                "No Facebook Pages found. Please create a Facebook Page and connect it "
                "to an Instagram Business Account."
            )

        account: dict[str, Any] | None = None
        page: dict[str, Any] | None = None
        for candidate in pages:
            linked = candidate.get("instagram_business_account")
            if not isinstance(linked, dict):
                try:
                    linked = await self._meta.page_instagram_account(
                        str(candidate["id"]), candidate["access_token"]
                    )
                except UpstreamError:
                    continue
            if linked and linked.get("id"):
                account, page = linked, candidate
                break

        if account is None or page is None:
            raise ValidationError(
                "No Instagram Business Account found. Please connect an Instagram "
                "Business Account to your Facebook Page."
            )

        account_id = str(account["id"])
        info = await self._meta.get_object(account_id, page["access_token"], "id,username")

        key = CredentialKey(app_user_id, Platform.INSTAGRAM, account_id)
        return await self._store.save(
            key,
            CredentialPatch(
                user_token=GrantUpdate(user_token, expires_in),
                page_token=GrantUpdate(page["access_token"], expires_in),
                refresh_token=GrantUpdate(refresh_token) if refresh_token else None,
                page_id=str(page["id"]),
                page_name=page.get("name"),
                account_meta={
                    "instagram_account_id": account_id,
                    "username": info.get("username") or account.get("username"),
                },
            ),
        )

    async def exchange_facebook_code(
        self, app_user_id: str, code: str, redirect_uri: str | None = None
    ) -> CredentialBundle:
        app_user_id = _require(app_user_id, "User ID is required")
        code = _require(code, "Authorization code is required")

        user_token, expires_in, refresh_token = await self._meta_user_token(code, redirect_uri)

        me = await self._meta.get_me(user_token, "id,name")
        facebook_user_id = me.get("id")
        if not facebook_user_id:
            raise UpstreamError("Facebook profile returned no id", details=me)

        pages = [p for p in await self._meta.list_pages(user_token) if p.get("access_token")]
        page = pages[0] if pages else None
        if page is None:
            logger.warning("facebook user has no pages, saving user token only")

        key = CredentialKey(app_user_id, Platform.FACEBOOK, str(facebook_user_id))
        return await self._store.save(
            key,
            CredentialPatch(
                user_token=GrantUpdate(user_token, expires_in),
                page_token=GrantUpdate(page["access_token"], expires_in) if page else None,
                refresh_token=GrantUpdate(refresh_token) if refresh_token else None,
                page_id=str(page["id"]) if page else None,
                page_name=page.get("name") if page else None,
                account_meta={"user_name": me.get("name")},
            ),
        )

    async def exchange_linkedin_code(
        self, app_user_id: str, code: str, redirect_uri: str | None = None
    ) -> CredentialBundle:
        """LinkedIn credentials are keyed on the application user itself."""
        app_user_id = _require(app_user_id, "User ID is required")
        code = _require(code, "Authorization code is required")

        body = await self._linkedin.exchange_code(code, redirect_uri)
        access_token = _access_token(body, "code exchange")
        refresh_token = body.get("refresh_token")
        expires_in = body.get("expires_in")
        refresh_expires_in = body.get("refresh_token_expires_in")

        key = CredentialKey(app_user_id, Platform.LINKEDIN, app_user_id)
        return await self._store.save(
            key,
            CredentialPatch(
                access_token=GrantUpdate(access_token, int(expires_in) if expires_in else None),
                refresh_token=(
                    GrantUpdate(refresh_token, int(refresh_expires_in) if refresh_expires_in else None)
                    if refresh_token
                    else None
                ),
                account_meta={"scope": body.get("scope")} if body.get("scope") else None,
            ),
        )

    async def integrations_overview(self, app_user_id: str) -> dict[str, Any]:
        """Connection status per platform for one application user.

        A platform's ``tokenExpired`` is true when any connected account's
        primary token has expired.
        """
        app_user_id = _require(app_user_id, "User ID is required")
        now = self._clock()
        bundles = await self._store.list_for_user(app_user_id)

        overview: dict[str, Any] = {}
        for platform in Platform:
            accounts = [
                {
                    "platformAccountId": b.key.platform_account_id,
                    "tokenExpired": b.is_primary_expired(now),
                    "updatedAt": b.updated_at.isoformat(),
                    "accountMeta": dict(b.account_meta),
                }
                for b in bundles
                if b.platform == platform
            ]
            overview[platform.value] = {
                "connected": bool(accounts),
                "tokenExpired": any(a["tokenExpired"] for a in accounts),
                "accounts": accounts,
            }
        return overview
