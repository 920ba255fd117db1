"""Tests for configuration loading, precedence and logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import yaml

from ams2stats.core.config import (
    AppConfig,
    LoggingConfig,
    dict_to_config,
    generate_default_config,
    load_config,
    load_env_config,
    merge_configs,
    save_config,
    setup_logging,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "AMS2STATS_DB_PATH",
        "AMS2STATS_DB_ECHO",
        "AMS2STATS_LOG_LEVEL",
        "AMS2STATS_LOG_FILE",
        "AMS2STATS_PAGE_SIZE",
        "AMS2STATS_SERVER_ID",
        "AMS2STATS_STRIP_COMMENTS",
    ):
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = AppConfig()
        assert config.database.path.endswith("stats.db")
        assert config.database.wal_mode is True
        assert config.importer.strip_comments is True
        assert config.importer.server_identifier is None
        assert config.query.page_size == 50
        assert config.logging.level == "INFO"


class TestLoading:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "ams2stats.yaml"
        path.write_text("database:\n  path: /tmp/x.db\nquery:\n  page_size: 10\n")
        config = load_config(path, include_env=False)
        assert config.database.path == "/tmp/x.db"
        assert config.query.page_size == 10
        assert config.importer.strip_comments is True

    def test_toml_file(self, tmp_path):
        path = tmp_path / "ams2stats.toml"
        path.write_text('[importer]\nserver_identifier = "league"\n')
        assert load_config(path, include_env=False).importer.server_identifier == "league"

    def test_json_file(self, tmp_path):
        path = tmp_path / "ams2stats.json"
        path.write_text(json.dumps({"logging": {"level": "DEBUG"}}))
        assert load_config(path, include_env=False).logging.level == "DEBUG"

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml", include_env=False)
        assert config == AppConfig()

    def test_unknown_keys_ignored(self):
        config = dict_to_config({"database": {"bogus": 1, "echo": True}})
        assert config.database.echo is True
        assert not hasattr(config.database, "bogus")


class TestEnvironment:
    def test_env_mapping_and_types(self, monkeypatch):
        monkeypatch.setenv("AMS2STATS_PAGE_SIZE", "25")
        monkeypatch.setenv("AMS2STATS_STRIP_COMMENTS", "false")
        monkeypatch.setenv("AMS2STATS_SERVER_ID", "league")
        env = load_env_config()
        assert env == {
            "query": {"page_size": 25},
            "importer": {"strip_comments": False, "server_identifier": "league"},
        }

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "ams2stats.yaml"
        path.write_text("database:\n  path: /from/file.db\n  echo: true\n")
        monkeypatch.setenv("AMS2STATS_DB_PATH", "/from/env.db")

        config = load_config(path)
        assert config.database.path == "/from/env.db"
        assert config.database.echo is True

    def test_merge_is_recursive(self):
        merged = merge_configs({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}, "b": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 4}


class TestSaving:
    def test_save_and_reload_json(self, tmp_path):
        config = AppConfig()
        config.query.page_size = 7
        path = tmp_path / "out.json"
        save_config(config, path)
        assert load_config(path, include_env=False).query.page_size == 7

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(ValueError):
            save_config(AppConfig(), tmp_path / "out.ini")

    def test_generated_default_yaml_is_valid(self, tmp_path):
        path = tmp_path / "ams2stats.yaml"
        generate_default_config(path)
        data = yaml.safe_load(path.read_text())
        assert data["query"]["page_size"] == 50
        assert load_config(path, include_env=False).database.busy_timeout_ms == 5000


class TestLoggingSetup:
    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "ams2stats.log"
        root = logging.getLogger()
        before = list(root.handlers)
        level = root.level
        try:
            setup_logging(LoggingConfig(level="debug", file=str(log_file)))
            logging.getLogger("ams2stats.test").info("hello from test")
            for handler in root.handlers:
                handler.flush()
            assert root.level == logging.DEBUG
            assert "hello from test" in log_file.read_text()
        finally:
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
            root.setLevel(level)
