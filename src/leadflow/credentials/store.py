"""Durable keyed storage for credential bundles.

TokenStore holds the merge and expiry semantics; a backing only moves
serialized records. Two backings ship:

- JsonFileBackend: one JSON file per key under <root>/<platform>/
- PostgresBackend: credential_bundles / refresh_markers tables

Backings are synchronous; TokenStore runs them in a worker thread so the
event loop is never blocked. Writes for one key are serialized by a
per-key asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import weakref
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import psycopg2

from leadflow.errors import NotFoundError, PersistenceError
from leadflow.infra.crypto import TokenCipher
from leadflow.infra.db import fetchall, fetchone, txn
from leadflow.infra.files import read_json, remove_file, write_json_atomic
from leadflow.infra.time import Clock, from_iso, to_iso, utc_now
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from .models import (
    CredentialBundle,
    CredentialKey,
    CredentialPatch,
    Platform,
    bundle_from_record,
    bundle_to_record,
    merge_patch,
)

logger = get_logger(__name__)

_MALFORMED = (ValueError, TypeError, AttributeError, KeyError)


class CredentialBackend(Protocol):
    def read(self, key: CredentialKey) -> dict[str, Any] | None: ...

    def write(self, key: CredentialKey, record: dict[str, Any]) -> None: ...

    def remove(self, key: CredentialKey) -> bool: ...

    def read_all(self, platform: Platform | None = None) -> list[dict[str, Any]]: ...

    def get_marker(self, name: str) -> str | None: ...

    def set_marker(self, name: str, value: str) -> None: ...


class JsonFileBackend:
    """Flat-file backing: <root>/<platform>/<user>@<account>.json."""

    MARKERS_FILE = "_markers.json"

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, key: CredentialKey) -> Path:
        name = f"{quote(key.app_user_id, safe='')}@{quote(key.platform_account_id, safe='')}.json"
        return self._root / key.platform.value / name

    def read(self, key: CredentialKey) -> dict[str, Any] | None:
        return read_json(self._path(key))

    def write(self, key: CredentialKey, record: dict[str, Any]) -> None:
        write_json_atomic(self._path(key), record)

    def remove(self, key: CredentialKey) -> bool:
        return remove_file(self._path(key))

    def read_all(self, platform: Platform | None = None) -> list[dict[str, Any]]:
        platforms = [platform] if platform else list(Platform)
        records = []
        for p in platforms:
            directory = self._root / p.value
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                try:
                    record = read_json(path)
                except ValueError:
                    logger.warning(
                        "unreadable credential file skipped",
                        extra={"extra_fields": safe_log_context(platform=p.value)},
                    )
                    continue
                if record is not None:
                    records.append(record)
        return records

    def get_marker(self, name: str) -> str | None:
        markers = read_json(self._root / self.MARKERS_FILE) or {}
        return markers.get(name)

    def set_marker(self, name: str, value: str) -> None:
        path = self._root / self.MARKERS_FILE
        markers = read_json(path) or {}
        markers[name] = value
        write_json_atomic(path, markers)


class PostgresBackend:
    """Postgres backing over the credential_bundles and refresh_markers tables."""

    def __init__(self, dsn: str | None = None) -> None:
        self._dsn = dsn

    def read(self, key: CredentialKey) -> dict[str, Any] | None:
        with txn(self._dsn) as cur:
            row = fetchone(
                cur,
                """
                SELECT record FROM credential_bundles
                WHERE app_user_id = %s AND platform = %s AND platform_account_id = %s
                """,
                (key.app_user_id, key.platform.value, key.platform_account_id),
            )
        return _as_record(row[0]) if row else None

    def write(self, key: CredentialKey, record: dict[str, Any]) -> None:
        with txn(self._dsn) as cur:
            cur.execute(
                """
                INSERT INTO credential_bundles
                    (app_user_id, platform, platform_account_id, record, updated_at)
                VALUES (%s, %s, %s, %s::jsonb, now())
                ON CONFLICT (app_user_id, platform, platform_account_id)
                DO UPDATE SET record = EXCLUDED.record, updated_at = now()
                """,
                (
                    key.app_user_id,
                    key.platform.value,
                    key.platform_account_id,
                    json.dumps(record, default=str),
                ),
            )

    def remove(self, key: CredentialKey) -> bool:
        with txn(self._dsn) as cur:
            cur.execute(
                """
                DELETE FROM credential_bundles
                WHERE app_user_id = %s AND platform = %s AND platform_account_id = %s
                """,
                (key.app_user_id, key.platform.value, key.platform_account_id),
            )
            return cur.rowcount > 0

    def read_all(self, platform: Platform | None = None) -> list[dict[str, Any]]:
        with txn(self._dsn) as cur:
            if platform is None:
                rows = fetchall(
                    cur, "SELECT record FROM credential_bundles ORDER BY created_at"
                )
            else:
                rows = fetchall(
                    cur,
                    "SELECT record FROM credential_bundles WHERE platform = %s ORDER BY created_at",
                    (platform.value,),
                )
        return [_as_record(row[0]) for row in rows]

    def get_marker(self, name: str) -> str | None:
        with txn(self._dsn) as cur:
            row = fetchone(cur, "SELECT last_run_at FROM refresh_markers WHERE name = %s", (name,))
        if row is None or row[0] is None:
            return None
        return to_iso(row[0])

    def set_marker(self, name: str, value: str) -> None:
        with txn(self._dsn) as cur:
            cur.execute(
                """
                INSERT INTO refresh_markers (name, last_run_at)
                VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET last_run_at = EXCLUDED.last_run_at
                """,
                (name, value),
            )


def _as_record(value: Any) -> dict[str, Any]:
    # psycopg2 decodes jsonb to dict; plain json/text columns come back as str
    if isinstance(value, str):
        return json.loads(value)
    return value


class TokenStore:
    def __init__(
        self,
        backend: CredentialBackend,
        *,
        cipher: TokenCipher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._backend = backend
        self._cipher = cipher
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[CredentialKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._marker_lock = asyncio.Lock()

    def _lock_for(self, key: CredentialKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def save(self, key: CredentialKey, patch: CredentialPatch) -> CredentialBundle:
        """Merge a patch into the stored bundle and write it back.

        Raises:
            ValidationError: If the patch does not fit the key's platform.
            PersistenceError: If the backing fails.
        """
        async with self._lock_for(key):
            existing = await self._read(key)
            bundle = merge_patch(existing, key, patch, self._clock())
            record = self._seal(bundle_to_record(bundle))
            try:
                await asyncio.to_thread(self._backend.write, key, record)
            except (OSError, psycopg2.Error) as exc:
                logger.error(
                    "failed to write credential bundle",
                    extra={
                        "extra_fields": safe_log_context(
                            platform=key.platform.value, error_type=type(exc).__name__
                        )
                    },
                )
                raise PersistenceError("failed to save credentials") from exc

        logger.info(
            "credential bundle saved",
            extra={
                "extra_fields": safe_log_context(
                    platform=key.platform.value,
                    created=existing is None,
                    fields=sorted(patch.fields_set()),
                )
            },
        )
        return bundle

    async def load(self, key: CredentialKey) -> CredentialBundle | None:
        return await self._read(key)

    async def require(self, key: CredentialKey) -> CredentialBundle:
        """Load a bundle or raise NotFoundError."""
        bundle = await self._read(key)
        if bundle is None:
            raise NotFoundError(
                f"No {key.platform.value} credentials for this account",
                details={"platformAccountId": key.platform_account_id},
            )
        return bundle

    async def delete(self, key: CredentialKey) -> bool:
        async with self._lock_for(key):
            try:
                removed = await asyncio.to_thread(self._backend.remove, key)
            except (OSError, psycopg2.Error) as exc:
                raise PersistenceError("failed to delete credentials") from exc
        if removed:
            logger.info(
                "credential bundle deleted",
                extra={"extra_fields": safe_log_context(platform=key.platform.value)},
            )
        return removed

    async def list_bundles(self, platform: Platform | None = None) -> list[CredentialBundle]:
        """Every readable bundle; malformed records are skipped with a warning."""
        try:
            records = await asyncio.to_thread(self._backend.read_all, platform)
        except (OSError, psycopg2.Error) as exc:
            raise PersistenceError("failed to list credentials") from exc

        bundles = []
        for record in records:
            try:
                bundles.append(bundle_from_record(self._unseal(record)))
            except _MALFORMED as exc:
                logger.warning(
                    "malformed credential record skipped",
                    extra={"extra_fields": safe_log_context(error=str(exc))},
                )
        return bundles

    async def list_keys(self, platform: Platform | None = None) -> list[CredentialKey]:
        return [bundle.key for bundle in await self.list_bundles(platform)]

    async def list_for_user(self, app_user_id: str) -> list[CredentialBundle]:
        return [b for b in await self.list_bundles() if b.key.app_user_id == app_user_id]

    async def list_stale_keys(self, threshold: datetime) -> list[CredentialKey]:
        """Keys whose primary grant was last renewed before ``threshold``."""
        stale = []
        for bundle in await self.list_bundles():
            renewed_at = bundle.last_renewed_at()
            if renewed_at is not None and renewed_at < threshold:
                stale.append(bundle.key)
        return stale

    async def get_marker(self, name: str) -> datetime | None:
        try:
            value = await asyncio.to_thread(self._backend.get_marker, name)
        except (OSError, ValueError, psycopg2.Error) as exc:
            raise PersistenceError("failed to read refresh marker") from exc
        return from_iso(value)

    async def set_marker(self, name: str, when: datetime) -> None:
        async with self._marker_lock:
            try:
                await asyncio.to_thread(self._backend.set_marker, name, to_iso(when))
            except (OSError, ValueError, psycopg2.Error) as exc:
                raise PersistenceError("failed to write refresh marker") from exc

    async def _read(self, key: CredentialKey) -> CredentialBundle | None:
        try:
            record = await asyncio.to_thread(self._backend.read, key)
        except (OSError, psycopg2.Error) as exc:
            raise PersistenceError("failed to read credentials") from exc
        except ValueError as exc:
            raise PersistenceError("stored credentials are not valid JSON") from exc
        if record is None:
            return None
        try:
            return bundle_from_record(self._unseal(record))
        except _MALFORMED as exc:
            raise PersistenceError("stored credentials are malformed") from exc

    def _seal(self, record: dict[str, Any]) -> dict[str, Any]:
        if self._cipher is None:
            return record
        return _map_tokens(record, self._cipher.encrypt)

    def _unseal(self, record: dict[str, Any]) -> dict[str, Any]:
        if self._cipher is None:
            return record
        return _map_tokens(record, self._cipher.decrypt)


def _map_tokens(record: dict[str, Any], fn) -> dict[str, Any]:
    tokens = record.get("tokens")
    if not isinstance(tokens, dict):
        return record
    mapped = {}
    for name, grant in tokens.items():
        if isinstance(grant, dict) and grant.get("token"):
            grant = {**grant, "token": fn(grant["token"])}
        mapped[name] = grant
    return {**record, "tokens": mapped}


def build_token_store(
    backend_name: str,
    *,
    directory: Path,
    database_url: str | None = None,
    encryption_key: str | None = None,
    clock: Clock = utc_now,
) -> TokenStore:
    """Build the configured TokenStore.

    Raises:
        ValueError: If the backend name or the encryption key is invalid.
    """
    backend: CredentialBackend
    if backend_name == "file":
        backend = JsonFileBackend(directory)
    elif backend_name == "postgres":
        backend = PostgresBackend(database_url)
    else:
        raise ValueError(f"Unknown token store backend: {backend_name}")

    cipher = TokenCipher.from_hex(encryption_key) if encryption_key else None
    return TokenStore(backend, cipher=cipher, clock=clock)
