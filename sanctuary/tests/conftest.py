from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sanctuary.config import Settings, get_settings
from sanctuary.models import Base


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    """Keep every test off the real database file and env-derived settings."""
    monkeypatch.setenv("SANCTUARY_DATABASE_PATH", str(tmp_path / "sanctuary-test.db"))
    monkeypatch.setenv("SANCTUARY_RATE_LIMIT_BACKEND", "memory")
    monkeypatch.delenv("SANCTUARY_BATCH_SIZE", raising=False)
    monkeypatch.delenv("SANCTUARY_REMATCH_POLICY", raising=False)
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.delenv("LLM_MODEL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    """In-memory SQLite shared across connections via StaticPool."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings() -> Settings:
    return Settings()
