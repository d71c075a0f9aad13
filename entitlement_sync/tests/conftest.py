"""
Root test configuration and fixtures.

Provides database fixtures and shared entitlement fixtures:
- db_engine / db_session: SQLite in-memory database, fresh per test
- now: fixed reference instant
- settings: ReconciliationSettings with defaults and fake secrets
- make_yaml_config: factory for YAML config files
"""

import os
import tempfile
import pytest
import yaml
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from entitlement_sync.config.settings import ReconciliationSettings

# Set test environment
os.environ.setdefault("ENV", "test")

FIXED_NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine():
    """
    Create an isolated SQLite in-memory engine.

    Services commit and roll back their own transactions, so each test gets
    its own database instead of an outer rollback-only transaction.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from entitlement_sync.db_base import Base
    import entitlement_sync.models  # noqa: F401 - register models

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a database session for one test."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def now() -> datetime:
    """Fixed reference instant for deterministic tests."""
    return FIXED_NOW


@pytest.fixture
def settings() -> ReconciliationSettings:
    """Default settings with fake provider credentials."""
    return ReconciliationSettings(
        provider_api_key="test-api-key",
        webhook_secret="whsec_MfKQ9r8GKYqrTwjUPD8ILPZIo2LaLaSw",
    )


@pytest.fixture
def clock(now):
    """Clock callable pinned to the fixed instant."""
    return lambda: now


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("entitlement_sync.yml", {"reconciliation": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
