"""Tests for the store: connection setup, transactions, schema migrations."""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, inspect, text

from ams2stats.core.config import AppConfig, DatabaseConfig, load_config, reset_config, set_config
from ams2stats.core.errors import ConstraintViolation
from ams2stats.infra.database import (
    SCHEMA_VERSION,
    DatabaseManager,
    Server,
    ensure_column,
    get_db,
    set_db,
)
from ams2stats.pipeline.importer import StatsImporter


class TestConnection:
    def test_foreign_keys_enforced(self, db):
        with db.engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1

    def test_wal_for_file_databases(self, db):
        with db.engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar().lower() == "wal"

    def test_wal_can_be_disabled(self, tmp_path):
        manager = DatabaseManager(tmp_path / "plain.db", config=DatabaseConfig(wal_mode=False))
        try:
            with manager.engine.connect() as conn:
                assert conn.exec_driver_sql("PRAGMA journal_mode").scalar().lower() != "wal"
        finally:
            manager.dispose()

    def test_creates_parent_directory(self, tmp_path):
        manager = DatabaseManager(tmp_path / "nested" / "dir" / "stats.db")
        try:
            assert (tmp_path / "nested" / "dir" / "stats.db").exists()
        finally:
            manager.dispose()

    def test_in_memory(self, snapshot_json):
        manager = DatabaseManager(":memory:")
        result = StatsImporter(manager).import_file("s.json", content=snapshot_json)
        assert result.imported == 2
        assert manager.db_path is None


class TestSessionScope:
    def test_commits(self, db):
        with db.session_scope() as session:
            session.add(Server(identifier="a", name="A"))

        session = db.get_session()
        try:
            assert session.query(Server).count() == 1
        finally:
            session.close()

    def test_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.session_scope() as session:
                session.add(Server(identifier="a", name="A"))
                session.flush()
                raise RuntimeError("abort")

        session = db.get_session()
        try:
            assert session.query(Server).count() == 0
        finally:
            session.close()

    def test_integrity_error_becomes_constraint_violation(self, db):
        with db.session_scope() as session:
            session.add(Server(identifier="dup", name="A"))

        with pytest.raises(ConstraintViolation):
            with db.session_scope() as session:
                session.add(Server(identifier="dup", name="B"))


class TestMigrations:
    def test_fresh_database_version(self, db):
        assert db.get_schema_version() == SCHEMA_VERSION

    def test_ensure_column_is_idempotent(self, db):
        with db.engine.begin() as conn:
            assert ensure_column(conn, "servers", "notes", "TEXT") is True
            assert ensure_column(conn, "servers", "notes", "TEXT") is False

    def test_upgrades_database_without_manual_flag(self, tmp_path):
        path = tmp_path / "old.db"
        engine = create_engine(f"sqlite:///{path}")
        with engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE stage_results ("
                    "id INTEGER PRIMARY KEY, stage_id INTEGER, session_id INTEGER, name TEXT)"
                )
            )
            conn.execute(text("CREATE TABLE schema_meta (key TEXT PRIMARY KEY, value TEXT)"))
            conn.execute(text("INSERT INTO schema_meta VALUES ('schema_version', '1')"))
            conn.execute(text("INSERT INTO stage_results (stage_id, session_id, name) VALUES (1, 1, 'x')"))
        engine.dispose()

        manager = DatabaseManager(path)
        try:
            inspector = inspect(manager.engine)
            assert "is_manual" in {c["name"] for c in inspector.get_columns("stage_results")}
            assert "idx_stage_results_manual" in {i["name"] for i in inspector.get_indexes("stage_results")}
            assert manager.get_schema_version() == SCHEMA_VERSION

            with manager.engine.connect() as conn:
                assert conn.execute(text("SELECT is_manual FROM stage_results")).scalar() == 0
        finally:
            manager.dispose()

    def test_never_downgrades(self, tmp_path):
        path = tmp_path / "future.db"
        DatabaseManager(path).dispose()

        engine = create_engine(f"sqlite:///{path}")
        with engine.begin() as conn:
            conn.execute(text("UPDATE schema_meta SET value = '99' WHERE key = 'schema_version'"))
        engine.dispose()

        manager = DatabaseManager(path)
        try:
            assert manager.get_schema_version() == 99
        finally:
            manager.dispose()


class TestGlobalManager:
    def test_explicit_config_is_not_overridden_by_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AMS2STATS_DB_PATH", str(tmp_path / "env.db"))
        manager = DatabaseManager(config=DatabaseConfig(path=str(tmp_path / "explicit.db")))
        try:
            assert manager.db_path == tmp_path / "explicit.db"
            assert not (tmp_path / "env.db").exists()
        finally:
            manager.dispose()

    def test_environment_reaches_store_through_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AMS2STATS_DB_PATH", str(tmp_path / "env.db"))
        config = load_config(tmp_path / "missing.yaml")
        manager = DatabaseManager(config=config.database)
        try:
            assert manager.db_path == tmp_path / "env.db"
        finally:
            manager.dispose()

    def test_get_db_uses_global_config(self, tmp_path):
        config = AppConfig()
        config.database.path = str(tmp_path / "global.db")
        set_config(config)
        set_db(None)
        try:
            manager = get_db()
            assert manager.db_path == tmp_path / "global.db"
            assert get_db() is manager
        finally:
            set_db(None)
            reset_config()
