"""Database URL helpers for Alembic migrations.

DATABASE_URL is shared with the service, which hands it straight to
psycopg2 and therefore accepts either a URL or a libpq key=value DSN.
Alembic needs a SQLAlchemy URL, so both forms are converted here.

Kept apart from env.py so they can be tested without alembic.context.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus

_DRIVER_SCHEME = "postgresql+psycopg2://"

# key=value or key='quoted value' with backslash escapes
_DSN_TOKEN = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S*)")


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Parse a libpq key=value DSN into a dict."""
    tokens: dict[str, str] = {}
    for key, raw in _DSN_TOKEN.findall(dsn):
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        tokens[key] = raw
    return tokens


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq DSN to a SQLAlchemy URL.

    host=/path (Unix socket) becomes a ?host= query parameter.
    """
    tokens = parse_libpq_dsn(dsn)
    user = quote_plus(tokens.get("user", ""))
    password = tokens.get("password")
    credentials = f"{user}:{quote_plus(password)}" if password else user
    dbname = quote_plus(tokens.get("dbname", ""))
    host = tokens.get("host", "localhost")
    port = tokens.get("port", "5432")

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}{credentials}@/{dbname}?host={quote_plus(host)}"
    return f"{_DRIVER_SCHEME}{credentials}@{host}:{port}/{dbname}"


def alembic_database_url(raw: str | None = None) -> str:
    """SQLAlchemy URL for migrations, from ``raw`` or DATABASE_URL.

    Raises:
        RuntimeError: If no database URL is configured.
    """
    url = raw if raw is not None else os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return libpq_dsn_to_url(url)
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = _DRIVER_SCHEME + url[len("postgresql://"):]
    return url
