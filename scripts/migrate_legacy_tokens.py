#!/usr/bin/env python3
"""One-time migration: legacy token files → TokenStore.

Older deployments kept tokens as loose JSON files keyed only by the
platform account id:

    {account}_tokens.json                  Instagram user + page token
    {account}_user_access_token.json       Instagram user token (oldest format)
    {account}_page_access_token.json       Instagram page token (oldest format)
    {account}_refresh_token.json           Instagram refresh token
    facebook_{account}_tokens.json         Facebook user / long-lived / page token
    facebook_{account}_refresh_token.json  Facebook refresh token
    linkedin_token.json                    LinkedIn access token

Legacy files carry no application user, so every imported bundle is
assigned to --app-user-id. Stored expiry instants are kept by converting
them to the remaining lifetime. Re-running is safe: saves merge.

Usage:
    python scripts/migrate_legacy_tokens.py --source data/legacy_tokens --app-user-id USER [--dry-run]

The target store is configured with the service environment
(TOKEN_STORE_BACKEND, TOKEN_STORE_DIR, DATABASE_URL, TOKENS_ENCRYPTION_KEY).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from leadflow.config import load_settings
from leadflow.credentials.models import CredentialKey, CredentialPatch, GrantUpdate, Platform
from leadflow.credentials.store import TokenStore, build_token_store
from leadflow.infra.time import utc_now

_SUFFIXES = (
    "_tokens.json",
    "_user_access_token.json",
    "_page_access_token.json",
    "_refresh_token.json",
)


@dataclass(frozen=True)
class LegacyImport:
    platform: Platform
    platform_account_id: str | None
    patch: CredentialPatch
    source: str


def _read(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError:
        print(f"WARNING: skipping unreadable file {path.name}", file=sys.stderr)
        return None
    return data if isinstance(data, dict) else None


def legacy_grant(data: Any, now: datetime) -> GrantUpdate | None:
    """Convert a legacy token object to a GrantUpdate.

    Legacy expiresAt values are epoch milliseconds; the grant keeps the
    same expiry instant by carrying the remaining lifetime.
    """
    if not isinstance(data, dict):
        return None
    token = data.get("token") or data.get("refreshToken") or data.get("access_token")
    if not token:
        return None

    expires_at = data.get("expiresAt")
    if expires_at:
        remaining = int(float(expires_at) / 1000 - now.timestamp())
        return GrantUpdate(token, max(remaining, 0))
    return GrantUpdate(token, None)


def _account_ids(directory: Path) -> tuple[set[str], set[str]]:
    instagram: set[str] = set()
    facebook: set[str] = set()
    for path in directory.glob("*.json"):
        name = path.name
        for suffix in _SUFFIXES:
            if name.endswith(suffix):
                account = name[: -len(suffix)]
                if account.startswith("facebook_"):
                    facebook.add(account[len("facebook_"):])
                elif account:
                    instagram.add(account)
                break
    return instagram, facebook


def _instagram_import(directory: Path, account: str, now: datetime) -> LegacyImport | None:
    combined = _read(directory / f"{account}_tokens.json")
    if combined is not None:
        user = combined.get("userAccessToken")
        page = combined.get("pageAccessToken")
        page_id = combined.get("pageId")
        source = f"{account}_tokens.json"
    else:
        user = _read(directory / f"{account}_user_access_token.json")
        page = _read(directory / f"{account}_page_access_token.json")
        page_id = None
        source = f"{account}_user_access_token.json"

    refresh = _read(directory / f"{account}_refresh_token.json")
    user_grant = legacy_grant(user, now)
    if user_grant is None:
        return None

    return LegacyImport(
        platform=Platform.INSTAGRAM,
        platform_account_id=account,
        patch=CredentialPatch(
            user_token=user_grant,
            page_token=legacy_grant(page, now),
            refresh_token=legacy_grant(refresh, now),
            page_id=str(page_id) if page_id else None,
            account_meta={"instagram_account_id": account},
        ),
        source=source,
    )


def _facebook_import(directory: Path, account: str, now: datetime) -> LegacyImport | None:
    data = _read(directory / f"facebook_{account}_tokens.json")
    if data is None:
        return None

    user_grant = legacy_grant(data.get("longLivedToken"), now) or legacy_grant(
        data.get("userAccessToken"), now
    )
    if user_grant is None:
        return None

    refresh = _read(directory / f"facebook_{account}_refresh_token.json")
    return LegacyImport(
        platform=Platform.FACEBOOK,
        platform_account_id=account,
        patch=CredentialPatch(
            user_token=user_grant,
            page_token=legacy_grant(data.get("pageAccessToken"), now),
            refresh_token=legacy_grant(refresh, now),
            page_id=data.get("pageId") or None,
            page_name=data.get("pageName") or None,
            account_meta={"user_name": data.get("userName")} if data.get("userName") else None,
        ),
        source=f"facebook_{account}_tokens.json",
    )


def _linkedin_import(directory: Path, now: datetime) -> LegacyImport | None:
    data = _read(directory / "linkedin_token.json")
    grant = legacy_grant(data, now)
    if grant is None:
        return None
    # LinkedIn bundles are keyed on the application user itself
    return LegacyImport(
        platform=Platform.LINKEDIN,
        platform_account_id=None,
        patch=CredentialPatch(access_token=grant),
        source="linkedin_token.json",
    )


def scan_legacy_dir(directory: Path, now: datetime) -> list[LegacyImport]:
    """Every importable bundle found in a legacy tokens directory."""
    instagram, facebook = _account_ids(directory)
    imports: list[LegacyImport] = []
    for account in sorted(instagram):
        found = _instagram_import(directory, account, now)
        if found:
            imports.append(found)
    for account in sorted(facebook):
        found = _facebook_import(directory, account, now)
        if found:
            imports.append(found)
    linkedin = _linkedin_import(directory, now)
    if linkedin:
        imports.append(linkedin)
    return imports


async def import_all(store: TokenStore, imports: list[LegacyImport], app_user_id: str) -> int:
    for item in imports:
        key = CredentialKey(app_user_id, item.platform, item.platform_account_id or app_user_id)
        await store.save(key, item.patch)
        print(f"imported {item.platform.value} credentials from {item.source}")
    return len(imports)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Import legacy token files into the token store")
    parser.add_argument("--source", type=Path, required=True, help="legacy tokens directory")
    parser.add_argument("--app-user-id", required=True, help="owner of the imported credentials")
    parser.add_argument("--dry-run", action="store_true", help="list what would be imported")
    args = parser.parse_args(argv)

    if not args.source.is_dir():
        print(f"ERROR: {args.source} is not a directory", file=sys.stderr)
        sys.exit(1)

    imports = scan_legacy_dir(args.source, utc_now())
    if args.dry_run:
        for item in imports:
            print(f"would import {item.platform.value} credentials from {item.source}")
        print(f"Done. {len(imports)} bundle(s) found.")
        return

    settings = load_settings()
    store = build_token_store(
        settings.token_store_backend,
        directory=settings.token_store_dir,
        database_url=settings.database_url,
        encryption_key=settings.tokens_encryption_key,
    )
    count = asyncio.run(import_all(store, imports, args.app_user_id))
    print(f"Done. {count} bundle(s) imported.")


if __name__ == "__main__":
    main()
