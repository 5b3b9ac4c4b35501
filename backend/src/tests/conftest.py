"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session / session_factory: fresh SQLite database per test
- clock: frozen, advanceable time source injected into every service
- gateway: FakeGateway returning queued charge outcomes
- entitlement_cache: in-memory cache with Redis disabled
- make_tenant / grant_tier / grant_addon: billing state factories
- temp_config_dir / make_yaml_config: YAML config files in a temp dir
"""

import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import MagicMock

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.config.billing_config import BillingConfig, reset_billing_config
from src.entitlements.cache import EntitlementCache, InMemoryCache, reset_entitlement_cache
from src.models.addon_subscription import AddOnStatus, AddOnSubscription
from src.models.tenant import Tenant
from src.models.tier_ownership import TierOwnership, TierOwnershipStatus
from src.services.proration import add_months
from src.tests.helpers import FakeGateway, FrozenClock, context_for

# Set test environment
os.environ.setdefault("ENV", "test")

# 8 days into a 31-day January cycle anchored on the 1st
FROZEN_NOW = datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)
CYCLE_START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Database
# =============================================================================

def _register_models() -> None:
    import src.models  # noqa: F401 - billing, ledger and roster tables
    from src.platform import audit  # noqa: F401 - Audit log model


@pytest.fixture(scope="function")
def db_engine():
    """
    SQLite in-memory engine with a fresh schema per test.

    StaticPool keeps a single connection so every session (and every
    TestClient worker thread) sees the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _register_models()
    from src.db_base import Base

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for one test. Services commit; the database is dropped afterwards."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture(autouse=True)
def _isolate_singletons(monkeypatch):
    """No shared Redis and no config or cache state leaking between tests."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_billing_config()
    reset_entitlement_cache()
    yield
    reset_billing_config()
    reset_entitlement_cache()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def billing_config() -> BillingConfig:
    """Reference price table, +3/+7/+14 retries, 80/90/95 warnings."""
    return BillingConfig()


@pytest.fixture
def entitlement_cache() -> EntitlementCache:
    redis_client = MagicMock()
    redis_client.available = False
    return EntitlementCache(ttl_seconds=5, redis_client=redis_client, memory_cache=InMemoryCache())


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# =============================================================================
# Billing state factories
# =============================================================================

@pytest.fixture
def make_tenant(db_session):
    """Factory for committed tenants."""
    def _make(name: Optional[str] = None) -> Tenant:
        tenant = Tenant(name=name or f"Trainer {uuid.uuid4().hex[:6]}", email=None)
        db_session.add(tenant)
        db_session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant) -> Tenant:
    return make_tenant("Trainer A")


@pytest.fixture
def other_tenant(make_tenant) -> Tenant:
    return make_tenant("Trainer B")


@pytest.fixture
def tenant_context(tenant):
    return context_for(tenant)


@pytest.fixture
def grant_tier(db_session, billing_config):
    """Give a tenant an active tier whose cycle started at cycle_start."""
    def _grant(tenant_id: str, level: int, cycle_start: datetime = CYCLE_START) -> TierOwnership:
        plan = billing_config.get_tier(level)
        ownership = TierOwnership(
            tenant_id=tenant_id,
            tier_level=level,
            status=TierOwnershipStatus.ACTIVE,
            purchased_at=cycle_start,
            amount_paid_cents=plan.price_cents,
            cycle_anchor_day=cycle_start.day,
            current_cycle_start=cycle_start,
            next_cycle_at=add_months(cycle_start, 1),
            next_cycle_price_cents=plan.price_cents,
        )
        db_session.add(ownership)
        db_session.commit()
        return ownership
    return _grant


@pytest.fixture
def grant_addon(db_session, billing_config):
    """Give a tenant an add-on subscription in the given status."""
    def _grant(
        tenant_id: str,
        level: int = 1,
        status: str = AddOnStatus.ACTIVE,
        started_at: datetime = CYCLE_START,
    ) -> AddOnSubscription:
        plan = billing_config.get_addon(level)
        sub = AddOnSubscription(
            tenant_id=tenant_id,
            addon_level=level,
            monthly_price_cents=plan.price_cents,
            usage_limit=plan.usage_limit,
            status=status,
            billing_anchor=started_at,
            current_period_start=started_at,
            current_period_end=add_months(started_at, 1),
            last_payment_succeeded_at=started_at if status == AddOnStatus.ACTIVE else None,
        )
        db_session.add(sub)
        db_session.commit()
        return sub
    return _grant


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
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
        config_path = make_yaml_config("billing.yml", {"billing": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
