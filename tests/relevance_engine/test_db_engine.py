"""Tests for engine selection and transaction handling."""

import logging

import pytest
from sqlalchemy import text

from relevance_engine import db_engine
from relevance_engine.errors import PersistenceError
from util.logging_util import setup_logger


class TestDatabaseUrl:
    """Tests for choosing the store location."""

    def test_default_is_local_sqlite_file(self, monkeypatch):
        monkeypatch.delenv(db_engine.DB_URL_VARIABLE, raising=False)
        assert db_engine.database_url() == "sqlite:///relevance_engine.db"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv(db_engine.DB_URL_VARIABLE, "sqlite:///elsewhere.db")
        assert db_engine.database_url() == "sqlite:///elsewhere.db"

    def test_engine_built_from_environment(self, monkeypatch, tmp_path):
        url = f"sqlite:///{tmp_path / 'store.db'}"
        monkeypatch.setenv(db_engine.DB_URL_VARIABLE, url)
        db_engine.reset_engine()
        try:
            assert str(db_engine.get_engine().url) == url
        finally:
            db_engine.reset_engine()


class TestGetSession:
    """Tests for commit and rollback behaviour."""

    def test_store_errors_become_persistence_errors(self, temp_db):
        with pytest.raises(PersistenceError):
            with db_engine.get_session() as session:
                session.execute(text("SELECT * FROM no_such_table"))

    def test_other_errors_propagate_unchanged(self, temp_db):
        with pytest.raises(KeyError):
            with db_engine.get_session():
                raise KeyError("boom")


class TestSetupLogger:
    """Tests for logger configuration."""

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("RELEVANCE_ENGINE_LOG_LEVEL", "debug")
        assert setup_logger("tests.env_level").level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, monkeypatch):
        monkeypatch.setenv("RELEVANCE_ENGINE_LOG_LEVEL", "chatty")
        assert setup_logger("tests.bad_level").level == logging.INFO

    def test_handler_added_once(self):
        setup_logger("tests.once")
        logger = setup_logger("tests.once")
        assert len(logger.handlers) == 1
