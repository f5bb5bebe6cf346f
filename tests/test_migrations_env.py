"""Tests for migrations/env_helpers.py DSN-to-URL conversion."""

from __future__ import annotations

import pytest

from migrations.env_helpers import alembic_database_url, libpq_dsn_to_url, parse_libpq_dsn


class TestParseLibpqDsn:
    def test_plain_pairs(self):
        assert parse_libpq_dsn("dbname=leadflow user=app host=db") == {
            "dbname": "leadflow",
            "user": "app",
            "host": "db",
        }

    def test_quoted_value_with_escaped_quote(self):
        assert parse_libpq_dsn(r"password='it\'s a pw'")["password"] == "it's a pw"


class TestLibpqDsnToUrl:
    def test_unix_socket(self):
        dsn = "dbname=leadflow user=leadflow-sa password=s3cret host=/cloudsql/proj:us-central1:inst"
        result = libpq_dsn_to_url(dsn)
        assert result == (
            "postgresql+psycopg2://leadflow-sa:s3cret@/leadflow"
            "?host=%2Fcloudsql%2Fproj%3Aus-central1%3Ainst"
        )

    def test_tcp_host(self):
        dsn = "dbname=leadflow user=admin password=pw host=localhost port=5432"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://admin:pw@localhost:5432/leadflow"

    def test_default_port(self):
        dsn = "dbname=db user=u password=p host=myhost"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://u:p@myhost:5432/db"

    def test_special_chars_encoded(self):
        result = libpq_dsn_to_url("dbname=db user=u@domain password=p@ss=word host=h port=5432")
        assert "u%40domain" in result
        assert "p%40ss%3Dword" in result

    def test_quoted_password_with_spaces(self):
        result = libpq_dsn_to_url("dbname=db user=u password='p@ss w0rd' host=h port=5432")
        assert "p%40ss+w0rd" in result

    def test_no_password(self):
        assert libpq_dsn_to_url("dbname=db user=u host=h") == "postgresql+psycopg2://u@h:5432/db"


class TestAlembicDatabaseUrl:
    def test_postgres_scheme_normalized(self):
        assert alembic_database_url("postgres://u:p@h/db") == "postgresql+psycopg2://u:p@h/db"

    def test_postgresql_scheme_normalized(self):
        assert alembic_database_url("postgresql://u:p@h/db") == "postgresql+psycopg2://u:p@h/db"

    def test_driver_url_untouched(self):
        url = "postgresql+psycopg2://u:p@h/db"
        assert alembic_database_url(url) == url

    def test_dsn_converted(self):
        assert alembic_database_url("dbname=db user=u password=p host=h").startswith(
            "postgresql+psycopg2://u:p@h"
        )

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u@h/db")
        assert alembic_database_url() == "postgresql+psycopg2://u@h/db"

    def test_missing_raises(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
            alembic_database_url()
