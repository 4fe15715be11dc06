"""
Tests for environment configuration, logging setup and engine construction.
"""
import io
import os
import logging

import pytest

from hierorm.engine import Engine
from hierorm.settings import ENGINE_LOGGERS, EngineSettings, configure_logging
from hierorm.storage import SqlStorage

ENV_VARS = (
    "HIERORM_DATABASE_URL",
    "HIERORM_ECHO_SQL",
    "HIERORM_CACHE_LOOKUPS",
    "HIERORM_SUBCLASS_ACCESS",
    "HIERORM_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # keep load_dotenv() away from any .env further up the tree
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def restore_loggers():
    levels = {name: logging.getLogger(name).level for name in ENGINE_LOGGERS}
    yield
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


class TestEngineSettings:
    def test_defaults(self, clean_env):
        settings = EngineSettings.from_env(str(clean_env / "missing.env"))
        assert settings.database_url == "sqlite:///:memory:"
        assert settings.cache_lookups is True
        assert settings.subclass_access is True
        assert settings.echo_sql is False
        assert settings.log_level == "WARNING"

    def test_environment_overrides(self, clean_env, monkeypatch):
        monkeypatch.setenv("HIERORM_CACHE_LOOKUPS", "false")
        monkeypatch.setenv("HIERORM_SUBCLASS_ACCESS", "0")
        monkeypatch.setenv("HIERORM_ECHO_SQL", "yes")
        monkeypatch.setenv("HIERORM_LOG_LEVEL", "debug")
        settings = EngineSettings.from_env(str(clean_env / "missing.env"))
        assert settings.cache_lookups is False
        assert settings.subclass_access is False
        assert settings.echo_sql is True
        assert settings.log_level == "DEBUG"

    def test_dotenv_file(self, clean_env):
        env_file = clean_env / ".env"
        env_file.write_text("HIERORM_DATABASE_URL=sqlite:///from-dotenv.db\nHIERORM_LOG_LEVEL=info\n")
        try:
            settings = EngineSettings.from_env(str(env_file))
        finally:
            for name in ENV_VARS:
                os.environ.pop(name, None)
        assert settings.database_url == "sqlite:///from-dotenv.db"
        assert settings.log_level == "INFO"


class TestConfigureLogging:
    def test_sets_levels_and_attaches_handler(self, restore_loggers):
        stream = io.StringIO()
        handler = configure_logging(logging.DEBUG, stream=stream)
        try:
            for name in ENGINE_LOGGERS:
                assert logging.getLogger(name).level == logging.DEBUG
            logging.getLogger("Engine").debug("hello from the engine")
            assert "Engine - DEBUG - hello from the engine" in stream.getvalue()
        finally:
            for name in ENGINE_LOGGERS:
                logging.getLogger(name).removeHandler(handler)

    def test_without_stream(self, restore_loggers):
        assert configure_logging("WARNING") is None
        assert logging.getLogger("SqlStorage").level == logging.WARNING


@pytest.mark.integration
class TestFromSettings:
    def test_in_memory_engine(self, models, restore_loggers):
        settings = EngineSettings(cache_lookups=False, log_level="ERROR")
        engine = Engine.from_settings(settings, classes=models)
        try:
            assert isinstance(engine.storage, SqlStorage)
            assert not engine.cache.enabled
            engine.create_tables()
            record = engine.create("Leaf", Y="from settings")
            record.write()
            assert engine.get_by_id("Leaf", record.id).get("Y") == "from settings"
        finally:
            engine.storage.engine.dispose()

    def test_registry_status(self, engine):
        status = engine.get_registry_status()
        assert set(status) == {"schema", "cache", "storage"}
        assert status["storage"]["storage"] == "sql"
        assert "Root" in status["storage"]["tables"]
        assert status["storage"]["in_transaction"] is False
        assert status["schema"]["class_count"] == 9
