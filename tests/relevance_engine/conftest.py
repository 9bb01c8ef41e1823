"""Shared fixtures for relevance engine tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from relevance_engine import database, db_engine
from relevance_engine.config import EngineConfig
from relevance_engine.orm_models import Base


@pytest.fixture
def temp_db():
    """Create a temporary in-memory database for testing."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    db_engine.set_engine(test_engine)
    yield test_engine
    db_engine.reset_engine()


@pytest.fixture
def config():
    """Default thresholds without backoff delays or profile expansion."""
    return EngineConfig(retry_base_delay_seconds=0.0, expand_profile_entries=False)


@pytest.fixture
def user_id(temp_db):
    return database.create_user("reader")


@pytest.fixture
def source_id(user_id):
    return database.add_source(user_id, "Example Feed", "https://example.com/feed.xml")
