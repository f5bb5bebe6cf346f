"""Tests for TokenStore over the JSON file backing."""

import json
from datetime import timedelta

import pytest

from leadflow.credentials.models import (
    CredentialKey,
    CredentialPatch,
    GrantUpdate,
    Platform,
)
from leadflow.credentials.store import JsonFileBackend, TokenStore, build_token_store
from leadflow.errors import NotFoundError, PersistenceError
from leadflow.infra.crypto import TokenCipher

from .helpers import T0, FixedClock

IG_KEY = CredentialKey("user-1", Platform.INSTAGRAM, "17841400000000000")
FB_KEY = CredentialKey("user-1", Platform.FACEBOOK, "fb-1")
LI_KEY = CredentialKey("user-2", Platform.LINKEDIN, "user-2")
KEY_HEX = "00" * 32


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(tmp_path, clock):
    return TokenStore(JsonFileBackend(tmp_path), clock=clock)


class TestSaveAndLoad:
    """Tests for save/load/require/delete."""

    @pytest.mark.anyio
    async def test_save_creates_bundle(self, store):
        saved = await store.save(IG_KEY, CredentialPatch(user_token=GrantUpdate("u1", 3600)))

        loaded = await store.load(IG_KEY)

        assert loaded == saved
        assert loaded.user_token.expires_at == T0 + timedelta(hours=1)

    @pytest.mark.anyio
    async def test_partial_save_preserves_page_token(self, store, clock):
        await store.save(
            IG_KEY,
            CredentialPatch(
                user_token=GrantUpdate("u1", 60),
                page_token=GrantUpdate("p1", 60),
                page_id="page-1",
            ),
        )
        clock.advance(days=1)

        await store.save(IG_KEY, CredentialPatch(user_token=GrantUpdate("u2", 60)))

        bundle = await store.require(IG_KEY)
        assert bundle.user_token.token == "u2"
        assert bundle.page_token.token == "p1"
        assert bundle.page_id == "page-1"
        assert bundle.created_at == T0
        assert bundle.updated_at == T0 + timedelta(days=1)

    @pytest.mark.anyio
    async def test_missing_bundle(self, store):
        assert await store.load(FB_KEY) is None
        with pytest.raises(NotFoundError):
            await store.require(FB_KEY)

    @pytest.mark.anyio
    async def test_delete(self, store):
        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("u")))

        assert await store.delete(FB_KEY) is True
        assert await store.delete(FB_KEY) is False
        assert await store.load(FB_KEY) is None

    @pytest.mark.anyio
    async def test_keys_with_path_characters(self, store):
        key = CredentialKey("team/alpha", Platform.FACEBOOK, "../fb")
        await store.save(key, CredentialPatch(user_token=GrantUpdate("u")))

        assert (await store.require(key)).key == key

    @pytest.mark.anyio
    async def test_corrupt_file_raises_persistence_error(self, store, tmp_path):
        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        (path,) = (tmp_path / "facebook").glob("*.json")
        path.write_text("{oops")

        with pytest.raises(PersistenceError):
            await store.load(FB_KEY)


class TestListing:
    """Tests for list_* queries."""

    @pytest.mark.anyio
    async def test_list_by_platform_and_user(self, store):
        await store.save(IG_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        await store.save(LI_KEY, CredentialPatch(access_token=GrantUpdate("a")))

        assert await store.list_keys(Platform.FACEBOOK) == [FB_KEY]
        assert len(await store.list_keys()) == 3
        assert {b.key for b in await store.list_for_user("user-1")} == {IG_KEY, FB_KEY}

    @pytest.mark.anyio
    async def test_malformed_file_is_skipped(self, store, tmp_path):
        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        (tmp_path / "facebook" / "junk@x.json").write_text(json.dumps({"platform": "facebook"}))
        (tmp_path / "facebook" / "broken@x.json").write_text("{")

        assert await store.list_keys() == [FB_KEY]

    @pytest.mark.anyio
    async def test_stale_keys(self, store, clock):
        await store.save(IG_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        clock.advance(days=40)
        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("u")))
        await store.save(LI_KEY, CredentialPatch(account_meta={"scope": "x"}))

        stale = await store.list_stale_keys(T0 + timedelta(days=10))

        assert stale == [IG_KEY]


class TestMarkers:
    """Tests for the refresh marker."""

    @pytest.mark.anyio
    async def test_marker_round_trip(self, store):
        assert await store.get_marker("token_refresh_last_run") is None

        await store.set_marker("token_refresh_last_run", T0)

        assert await store.get_marker("token_refresh_last_run") == T0

    @pytest.mark.anyio
    async def test_marker_file_is_not_a_bundle(self, store):
        await store.set_marker("token_refresh_last_run", T0)
        assert await store.list_keys() == []


class TestEncryption:
    """Tests for at-rest token encryption."""

    @pytest.mark.anyio
    async def test_tokens_encrypted_on_disk(self, tmp_path, clock):
        store = TokenStore(JsonFileBackend(tmp_path), cipher=TokenCipher.from_hex(KEY_HEX), clock=clock)

        await store.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("EAAplaintext")))

        (path,) = (tmp_path / "facebook").glob("*.json")
        raw = path.read_text()
        assert "EAAplaintext" not in raw
        assert json.loads(raw)["tokens"]["user_token"]["token"].startswith("enc:")
        assert (await store.require(FB_KEY)).user_token.token == "EAAplaintext"

    @pytest.mark.anyio
    async def test_plaintext_records_still_readable(self, tmp_path, clock):
        plain = TokenStore(JsonFileBackend(tmp_path), clock=clock)
        await plain.save(FB_KEY, CredentialPatch(user_token=GrantUpdate("legacy")))

        encrypted = build_token_store("file", directory=tmp_path, encryption_key=KEY_HEX, clock=clock)

        assert (await encrypted.require(FB_KEY)).user_token.token == "legacy"

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError):
            build_token_store("redis", directory=tmp_path)
