"""Tests for engine and session lifecycle."""

import pytest
from fastapi import HTTPException
from sqlalchemy import text

from hub.config.settings import reset_settings
from hub.database import session as db_session_module


@pytest.fixture(autouse=True)
def fresh_engine(monkeypatch):
    monkeypatch.setattr(db_session_module, "_engine", None)
    monkeypatch.setattr(db_session_module, "_SessionLocal", None)
    yield
    if db_session_module._engine is not None:
        db_session_module._engine.dispose()


def test_missing_database_url_is_503():
    dependency = db_session_module.get_db_session()

    with pytest.raises(HTTPException) as exc_info:
        next(dependency)

    assert exc_info.value.status_code == 503


def test_sqlite_url_skips_connection_pool(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'hub.db'}")
    reset_settings()

    engine = db_session_module.get_engine()

    assert engine.dialect.name == "sqlite"
    assert db_session_module.get_engine() is engine


def test_sync_session_uses_configured_engine(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'hub.db'}")
    reset_settings()

    session = db_session_module.get_db_session_sync()
    try:
        assert session.execute(text("SELECT 1")).scalar() == 1
    finally:
        session.close()
