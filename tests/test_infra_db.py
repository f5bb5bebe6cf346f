"""Tests for database layer (no real DB needed)."""

import os
from unittest.mock import MagicMock, patch

import pytest

from leadflow.infra.db import fetchall, fetchone, get_conn, txn


class TestGetConn:
    """Tests for get_conn()."""

    def test_explicit_dsn_wins(self):
        with patch.dict(os.environ, {"DATABASE_URL": "dbname=env"}, clear=True), \
             patch("leadflow.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn("dbname=explicit")
            mock_connect.assert_called_once_with("dbname=explicit")

    def test_falls_back_to_env(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgres://u:p@h/db"}, clear=True), \
             patch("leadflow.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("postgres://u:p@h/db")

    def test_missing_dsn_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL"):
                get_conn()


class TestTxn:
    """Tests for txn() commit/rollback."""

    def test_commit_on_success(self):
        conn = MagicMock()
        with patch("leadflow.infra.db.psycopg2.connect", return_value=conn):
            with txn("dbname=x") as cur:
                cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_called_once()

    def test_rollback_on_error(self):
        conn = MagicMock()
        with patch("leadflow.infra.db.psycopg2.connect", return_value=conn):
            with pytest.raises(ValueError):
                with txn("dbname=x"):
                    raise ValueError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()


class TestFetchHelpers:
    def test_fetchone_and_fetchall(self):
        cur = MagicMock()
        cur.fetchone.return_value = ("a",)
        cur.fetchall.return_value = [("a",), ("b",)]

        assert fetchone(cur, "SELECT %s", ("a",)) == ("a",)
        assert fetchall(cur, "SELECT x") == [("a",), ("b",)]
        cur.execute.assert_any_call("SELECT %s", ("a",))
        cur.execute.assert_any_call("SELECT x", None)
