"""Tests for database engine configuration."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import inspect, text

from listing_watcher.database.engine import (
    build_engine,
    get_database_url,
    get_engine,
    get_session,
    reset_engine,
)


@pytest.fixture(autouse=True)
def clean_engine():
    reset_engine()
    with patch.dict(os.environ):
        os.environ.pop("DATABASE_URL", None)
        os.environ.pop("WATCHER_DB_PATH", None)
        yield
    reset_engine()


class TestGetDatabaseUrl:
    """Tests for get_database_url() resolution order."""

    def test_database_url_env_wins(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://host/db"}):
            assert get_database_url(db_path=tmp_path / "x.db") == "postgresql://host/db"

    def test_explicit_path(self, tmp_path: Path) -> None:
        db_path = tmp_path / "watch.db"

        assert get_database_url(db_path=db_path) == f"sqlite:///{db_path}"

    def test_watcher_db_path_env(self, tmp_path: Path) -> None:
        custom = tmp_path / "custom.db"
        with patch.dict(os.environ, {"WATCHER_DB_PATH": str(custom)}):
            assert get_database_url() == f"sqlite:///{custom}"

    def test_default_path(self) -> None:
        url = get_database_url()

        assert url.startswith("sqlite:///")
        assert url.endswith("listing_watcher.db")


class TestGetEngine:
    """Tests for the process-wide engine."""

    def test_engine_is_cached_until_reset(self, tmp_path: Path) -> None:
        first = get_engine(db_path=tmp_path / "a.db")
        assert get_engine() is first

        reset_engine()
        second = get_engine(db_path=tmp_path / "b.db")

        assert second is not first
        assert "b.db" in str(second.url)

    def test_creates_parent_directory_and_tables(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "dir" / "watch.db"

        engine = get_engine(db_path=db_path)

        assert db_path.parent.is_dir()
        tables = set(inspect(engine).get_table_names())
        assert {
            "services",
            "service_credentials",
            "search_configs",
            "listings",
            "notifications",
            "devices",
        } <= tables

    def test_session_context_manager(self, tmp_path: Path) -> None:
        get_engine(db_path=tmp_path / "s.db")

        with get_session() as session:
            assert session.execute(text("SELECT 1")).scalar() == 1


class TestSqlitePragmas:
    """Per-connection SQLite settings."""

    def test_wal_and_foreign_keys(self, tmp_path: Path) -> None:
        engine = build_engine(f"sqlite:///{tmp_path / 'p.db'}")

        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
