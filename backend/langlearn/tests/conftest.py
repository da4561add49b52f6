"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: fresh SQLite in-memory database per test
- file_db_factory: file-backed SQLite sessions for multi-threaded tests
- make_subscription: factory for persisted subscriptions
- plan_catalog: catalog singleton reset around each test
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from langlearn.config.plan_catalog import get_plan_catalog, reset_plan_catalog
from langlearn.db_base import Base
from langlearn.models.subscription import Plan, SubscriptionStatus
from langlearn.services.subscription_state import build_free_subscription

# Set test environment
os.environ.setdefault("ENV", "test")


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _create_schema(engine) -> None:
    # Import models so they register on Base.metadata
    import langlearn.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@pytest.fixture(scope="function")
def db_engine():
    """SQLite in-memory engine with the full schema."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _create_schema(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for one test; the database is discarded afterwards."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_db_factory(tmp_path):
    """
    Session factory on a file-backed SQLite database.

    Each session gets its own connection, so threads really interleave.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _create_schema(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def plan_catalog(monkeypatch):
    """Catalog singleton loaded from the packaged plans.yml."""
    for name in (
        "PLAN_CATALOG_PATH",
        "STRIPE_PREMIUM_MONTHLY_PRICE_ID",
        "STRIPE_PREMIUM_YEARLY_PRICE_ID",
        "STRIPE_PRO_MONTHLY_PRICE_ID",
        "STRIPE_PRO_YEARLY_PRICE_ID",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_plan_catalog()
    catalog = get_plan_catalog()
    yield catalog
    reset_plan_catalog()


@pytest.fixture
def make_subscription(db_session):
    """
    Factory fixture that persists a subscription.

    Usage:
        sub = make_subscription("user-1", plan=Plan.PRO, external_subscription_ref="sub_1")
    """
    def _make(user_id: str = "user-1", **fields):
        subscription = build_free_subscription(user_id, fields.pop("now", NOW))
        for name, value in fields.items():
            if isinstance(value, (Plan, SubscriptionStatus)):
                value = value.value
            setattr(subscription, name, value)
        db_session.add(subscription)
        db_session.commit()
        return subscription
    return _make


def paid_period(now: datetime = NOW, days_in: int = 5, length: int = 30):
    """(start, end) of a billing period that started `days_in` days ago."""
    start = now - timedelta(days=days_in)
    return start, start + timedelta(days=length)


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
