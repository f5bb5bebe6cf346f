"""Tests for token verification, OAuth exchanges and the integrations view."""

from datetime import timedelta

import pytest

from leadflow.config import LinkedInAppConfig, MetaAppConfig
from leadflow.credentials.models import (
    CredentialKey,
    CredentialPatch,
    FacebookCredentials,
    GrantUpdate,
    InstagramCredentials,
    LinkedInCredentials,
    Platform,
)
from leadflow.credentials.onboarding import CredentialOnboarding
from leadflow.credentials.platform_api import LinkedInClient, MetaGraphClient
from leadflow.credentials.store import JsonFileBackend, TokenStore
from leadflow.errors import UpstreamError, ValidationError

from .helpers import GRAPH, INSTAGRAM_GRAPH, LINKEDIN_TOKEN, FixedClock, PlatformStub

IG_ACCOUNT = "17841400000000000"


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def stub():
    return PlatformStub()


@pytest.fixture
def store(tmp_path, clock):
    return TokenStore(JsonFileBackend(tmp_path), clock=clock)


@pytest.fixture
def onboarding(stub, store, clock):
    http = stub.client()
    return CredentialOnboarding(
        store,
        MetaGraphClient(
            http,
            MetaAppConfig(app_id="app-id", app_secret="app-secret", whatsapp_business_account_id="waba-1"),
        ),
        LinkedInClient(
            http,
            LinkedInAppConfig(client_id="li", client_secret="sec", redirect_uri="http://localhost/li"),
        ),
        frontend_url="http://localhost:3000/",
        clock=clock,
    )


def _stub_meta_code_exchange(stub, long_lived=True):
    stub.add("GET", f"{GRAPH}/oauth/access_token", {"access_token": "EAAshort", "expires_in": 3600})
    if long_lived:
        stub.add("GET", f"{GRAPH}/oauth/access_token", {"access_token": "EAAlong", "expires_in": 5184000})
    else:
        stub.add("GET", f"{GRAPH}/oauth/access_token", {"error": {"message": "nope"}}, status=400)


class TestVerifyToken:
    """Tests for verify_token."""

    @pytest.mark.anyio
    async def test_whatsapp(self, stub, onboarding):
        stub.add("GET", f"{GRAPH}/waba-1", {"id": "waba-1", "name": "Biz"})
        assert await onboarding.verify_token("whatsapp", "EAAwa") == {"id": "waba-1", "name": "Biz"}

    @pytest.mark.anyio
    async def test_facebook(self, stub, onboarding):
        stub.add("GET", f"{GRAPH}/me", {"id": "42", "name": "Ana"})
        assert await onboarding.verify_token("Facebook", "EAAfb") == {"id": "42", "name": "Ana"}

    @pytest.mark.anyio
    async def test_instagram_graph_token(self, stub, onboarding):
        stub.add("GET", f"{INSTAGRAM_GRAPH}/me", {"id": "ig-1", "username": "shop", "account_type": "BUSINESS"})

        info = await onboarding.verify_token("instagram", "IGQtoken")

        assert info == {
            "instagram_account_id": "ig-1",
            "instagram_username": "shop",
            "account_type": "BUSINESS",
        }

    @pytest.mark.anyio
    async def test_instagram_via_facebook_pages(self, stub, onboarding):
        stub.add("GET", f"{INSTAGRAM_GRAPH}/me", {"error": {"message": "bad"}}, status=400)
        stub.add(
            "GET",
            f"{GRAPH}/me/accounts",
            {"data": [{"id": "page-1", "name": "Shop", "access_token": "EAAp",
                       "instagram_business_account": {"id": IG_ACCOUNT}}]},
        )
        stub.add("GET", f"{GRAPH}/{IG_ACCOUNT}", {"id": IG_ACCOUNT, "username": "shop", "name": "Shop"})

        info = await onboarding.verify_token("instagram", "EAAuser")

        assert info["instagram_account_id"] == IG_ACCOUNT
        assert info["page_id"] == "page-1"

    @pytest.mark.anyio
    async def test_instagram_without_business_account(self, stub, onboarding):
        stub.add("GET", f"{INSTAGRAM_GRAPH}/me", {"error": {"message": "bad"}}, status=400)
        stub.add("GET", f"{GRAPH}/me/accounts", {"data": []})
        stub.add("GET", f"{GRAPH}/me", {"id": "page-1", "name": "Shop"})

        with pytest.raises(ValidationError, match="No Instagram Business Account"):
            await onboarding.verify_token("instagram", "EAAuser")

    @pytest.mark.anyio
    async def test_rejected_token(self, stub, onboarding):
        stub.add("GET", f"{GRAPH}/me", {"error": {"message": "Invalid OAuth access token."}}, status=400)
        with pytest.raises(UpstreamError):
            await onboarding.verify_token("facebook", "bad")

    @pytest.mark.anyio
    @pytest.mark.parametrize("platform,token", [("tiktok", "t"), ("facebook", None), ("facebook", "")])
    async def test_invalid_input(self, onboarding, platform, token):
        with pytest.raises(ValidationError):
            await onboarding.verify_token(platform, token)


class TestExchanges:
    """Tests for the OAuth code exchanges."""

    @pytest.mark.anyio
    async def test_instagram_exchange_saves_bundle(self, stub, onboarding, store, clock):
        _stub_meta_code_exchange(stub)
        stub.add(
            "GET",
            f"{GRAPH}/me/accounts",
            {"data": [{"id": "page-1", "name": "Shop", "access_token": "EAApage",
                       "instagram_business_account": {"id": IG_ACCOUNT, "username": "shop"}}]},
        )
        stub.add("GET", f"{GRAPH}/{IG_ACCOUNT}", {"id": IG_ACCOUNT, "username": "shop"})

        bundle = await onboarding.exchange_instagram_code("user-1", "the-code")

        assert isinstance(bundle, InstagramCredentials)
        assert bundle.key == CredentialKey("user-1", Platform.INSTAGRAM, IG_ACCOUNT)
        assert bundle.user_token.token == "EAAlong"
        assert bundle.user_token.expires_at == clock.now + timedelta(seconds=5184000)
        assert bundle.page_token.token == "EAApage"
        assert bundle.account_meta["username"] == "shop"
        assert await store.load(bundle.key) == bundle
        first = stub.calls(f"{GRAPH}/oauth/access_token")[0]
        assert first.url.params["redirect_uri"] == "http://localhost:3000/channels"

    @pytest.mark.anyio
    async def test_instagram_exchange_without_pages(self, stub, onboarding):
        _stub_meta_code_exchange(stub)
        stub.add("GET", f"{GRAPH}/me/accounts", {"data": []})

        with pytest.raises(ValidationError, match="No Facebook Pages"):
            await onboarding.exchange_instagram_code("user-1", "the-code")

    @pytest.mark.anyio
    async def test_facebook_exchange_keeps_short_token_when_long_fails(self, stub, onboarding, clock):
        _stub_meta_code_exchange(stub, long_lived=False)
        stub.add("GET", f"{GRAPH}/me", {"id": "fb-42", "name": "Ana"})
        stub.add("GET", f"{GRAPH}/me/accounts", {"data": [{"id": "page-1", "name": "Shop", "access_token": "EAApage"}]})

        bundle = await onboarding.exchange_facebook_code("user-1", "the-code", "http://x/cb")

        assert isinstance(bundle, FacebookCredentials)
        assert bundle.key.platform_account_id == "fb-42"
        assert bundle.user_token.token == "EAAshort"
        assert bundle.user_token.expires_at == clock.now + timedelta(hours=1)
        assert bundle.page_id == "page-1"
        assert bundle.account_meta == {"user_name": "Ana"}

    @pytest.mark.anyio
    async def test_linkedin_exchange(self, stub, onboarding):
        stub.add(
            "POST",
            LINKEDIN_TOKEN,
            {"access_token": "AQa", "expires_in": 5184000, "refresh_token": "AQr",
             "refresh_token_expires_in": 31536000, "scope": "r_liteprofile"},
        )

        bundle = await onboarding.exchange_linkedin_code("user-9", "the-code")

        assert isinstance(bundle, LinkedInCredentials)
        assert bundle.key == CredentialKey("user-9", Platform.LINKEDIN, "user-9")
        assert bundle.refresh_token.expires_in == 31536000
        assert bundle.account_meta == {"scope": "r_liteprofile"}

    @pytest.mark.anyio
    async def test_missing_code(self, onboarding):
        with pytest.raises(ValidationError):
            await onboarding.exchange_linkedin_code("user-9", "")


class TestIntegrationsOverview:
    """Tests for integrations_overview."""

    @pytest.mark.anyio
    async def test_overview(self, onboarding, store, clock):
        await store.save(
            CredentialKey("user-1", Platform.FACEBOOK, "fb-1"),
            CredentialPatch(user_token=GrantUpdate("EAAu", 60)),
        )
        await store.save(
            CredentialKey("user-1", Platform.LINKEDIN, "user-1"),
            CredentialPatch(access_token=GrantUpdate("AQ", 10_000)),
        )
        await store.save(
            CredentialKey("someone-else", Platform.INSTAGRAM, "ig"),
            CredentialPatch(user_token=GrantUpdate("EAAu")),
        )
        clock.advance(minutes=5)

        overview = await onboarding.integrations_overview("user-1")

        assert overview["facebook"]["connected"] is True
        assert overview["facebook"]["tokenExpired"] is True
        assert overview["linkedin"]["tokenExpired"] is False
        assert overview["instagram"] == {"connected": False, "tokenExpired": False, "accounts": []}
        assert overview["facebook"]["accounts"][0]["platformAccountId"] == "fb-1"
