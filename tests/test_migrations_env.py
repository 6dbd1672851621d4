"""Tests for the Alembic database URL helpers."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from migrations.env_helpers import get_database_url, libpq_dsn_to_url, parse_libpq_dsn


class TestParseLibpqDsn:
    def test_plain_tokens(self):
        assert parse_libpq_dsn("dbname=tezeus user=app host=h") == {
            "dbname": "tezeus",
            "user": "app",
            "host": "h",
        }

    def test_quoted_value_with_spaces(self):
        assert parse_libpq_dsn("password='p@ss w0rd' host=h")["password"] == "p@ss w0rd"

    def test_escaped_quote(self):
        assert parse_libpq_dsn(r"password='it\'s' host=h")["password"] == "it's"


class TestLibpqDsnToUrl:
    def test_cloudsql_socket(self):
        dsn = "dbname=tezeus user=tezeus-sa password=s3cret host=/cloudsql/proj:southamerica-east1:inst"
        assert libpq_dsn_to_url(dsn) == (
            "postgresql+psycopg2://tezeus-sa:s3cret@/tezeus"
            "?host=%2Fcloudsql%2Fproj%3Asouthamerica-east1%3Ainst"
        )

    def test_tcp_host(self):
        dsn = "dbname=tezeus user=admin password=pw host=localhost port=5432"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://admin:pw@localhost:5432/tezeus"

    def test_default_port(self):
        assert libpq_dsn_to_url("dbname=db user=u password=p host=myhost") == "postgresql+psycopg2://u:p@myhost:5432/db"

    def test_special_chars_encoded(self):
        result = libpq_dsn_to_url("dbname=db user=u@domain password=p@ss=word host=h port=5432")
        assert "u%40domain" in result
        assert "p%40ss%3Dword" in result

    def test_db_password_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "from-env" in libpq_dsn_to_url("dbname=db user=u host=h port=5432")

    def test_dsn_password_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = libpq_dsn_to_url("dbname=db user=u password=from-dsn host=h port=5432")
        assert "from-dsn" in result
        assert "from-env" not in result


class TestGetDatabaseUrl:
    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                get_database_url()

    def test_url_passthrough(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+psycopg2://u:p@h/db"}, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:p@h/db"

    @pytest.mark.parametrize("url", ["postgres://u:p@h/db", "postgresql://u:p@h/db"])
    def test_scheme_gets_driver(self, url):
        with patch.dict(os.environ, {"DATABASE_URL": url}, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_url_db_password_fallback(self):
        env = {"DATABASE_URL": "postgresql://u@h:5433/db", "DB_PASSWORD": "secret"}
        with patch.dict(os.environ, env, clear=True):
            assert get_database_url() == "postgresql+psycopg2://u:secret@h:5433/db"

    def test_dsn_converted(self):
        with patch.dict(os.environ, {"DATABASE_URL": "dbname=tezeus user=sa password=pw host=db"}, clear=True):
            assert get_database_url() == "postgresql+psycopg2://sa:pw@db:5432/tezeus"
