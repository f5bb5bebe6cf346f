"""TokenStore over the Postgres backing.

Requires DATABASE_URL pointing at a database migrated with alembic;
skipped otherwise.
"""

import os
import uuid

import pytest

from leadflow.credentials.models import CredentialKey, CredentialPatch, GrantUpdate, Platform
from leadflow.credentials.store import PostgresBackend, TokenStore
from leadflow.infra.db import txn

from .helpers import T0, FixedClock

DATABASE_URL = os.environ.get("DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="DATABASE_URL not set")


@pytest.fixture
def app_user_id():
    user = f"test-{uuid.uuid4()}"
    yield user
    with txn(DATABASE_URL) as cur:
        cur.execute("DELETE FROM credential_bundles WHERE app_user_id = %s", (user,))


@pytest.fixture
def store():
    return TokenStore(PostgresBackend(DATABASE_URL), clock=FixedClock())


class TestPostgresTokenStore:
    @pytest.mark.anyio
    async def test_save_merge_and_delete(self, store, app_user_id):
        key = CredentialKey(app_user_id, Platform.FACEBOOK, "fb-1")

        await store.save(key, CredentialPatch(user_token=GrantUpdate("u1"), page_token=GrantUpdate("p1")))
        await store.save(key, CredentialPatch(user_token=GrantUpdate("u2")))

        bundle = await store.require(key)
        assert bundle.user_token.token == "u2"
        assert bundle.page_token.token == "p1"
        assert key in await store.list_keys(Platform.FACEBOOK)

        assert await store.delete(key) is True
        assert await store.load(key) is None

    @pytest.mark.anyio
    async def test_marker(self, store):
        name = f"test-marker-{uuid.uuid4()}"
        try:
            await store.set_marker(name, T0)
            assert await store.get_marker(name) == T0
        finally:
            with txn(DATABASE_URL) as cur:
                cur.execute("DELETE FROM refresh_markers WHERE name = %s", (name,))
