"""
Shared fixtures: throwaway SQLite databases, seeded connections and an API client.
"""
import os

# Must be set before brandsync.config is first imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("DASH_USER", "")
os.environ.setdefault("DASH_PASS", "")

from datetime import date, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from brandsync.config import Settings
from brandsync.models.base import create_db_engine, init_db, get_db
from brandsync.models.connection import Platform
from brandsync.services.connection_registry import ConnectionRegistry

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def make_settings(**overrides) -> Settings:
    """Settings with no real sleeping: zero backoff everywhere."""
    values = dict(
        database_url="sqlite://",
        log_to_file=False,
        rate_limit_base_delay=0.0,
        rate_limit_max_delay=0.0,
        ledger_backoff_base_seconds=0.0,
        ledger_backoff_max_seconds=0.0,
        meta_graph_url="https://graph.test",
        report_timezone="UTC",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite so separate threads get separate connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def meta_connection(db):
    return ConnectionRegistry(db).connect("brand-a", Platform.META, "meta-token-123456", "act_111")


@pytest.fixture
def shopify_connection(db):
    return ConnectionRegistry(db).connect("brand-a", Platform.SHOPIFY, "shpat_abcdef", "brand-a.myshopify.com")


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient
    from brandsync.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def days_ago(n: int) -> date:
    return date.today() - timedelta(days=n)
