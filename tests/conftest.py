"""
Centralized test configuration.

Environment overrides must be in place before ``ridefare`` is imported: the
settings object is cached at first use.
"""
import fnmatch
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("DB_RETRY_ATTEMPTS", "1")

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import ridefare.models  # noqa: F401  registers tables
from ridefare.database import Base
from ridefare.models.price_rule import PriceRule
from ridefare.redis_client import CacheFacade
from ridefare.schemas.pricing import PricingContext
from ridefare.schemas.rules import Rule

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday 2024-06-03 10:00 UTC
MONDAY_10AM_MS = 1717408800000


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def locking_engine(tmp_path):
    """File database: one connection per session, writers queue on BEGIN IMMEDIATE."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ridefare.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _manual_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def locking_session_factory(locking_engine):
    return async_sessionmaker(locking_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class MockRedis:
    """In-memory stand-in for the subset of redis.asyncio the cache façade uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self._closed = False

    async def ping(self):
        return not self._closed

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def cache(mock_redis):
    return CacheFacade(mock_redis, namespace="test")


# ---------------------------------------------------------------------------
# Rule and context factories
# ---------------------------------------------------------------------------

RULE_DEFAULTS = {
    "rule_name": "rule",
    "category": "base_pricing",
    "rule_type": "fixed_amount",
    "status": "active",
    "created_at": 1,
    "updated_at": 1,
}


@pytest.fixture
def make_rule():
    """Build an immutable ``Rule`` projection."""

    def _make(rule_id, **overrides):
        data = {**RULE_DEFAULTS, "rule_id": rule_id, "rule_name": rule_id, **overrides}
        return Rule.model_validate(data)

    return _make


@pytest.fixture
def make_context():
    def _make(**overrides):
        data = {
            "user_id": "user-1",
            "now_ms": MONDAY_10AM_MS,
            "estimated_distance_km": Decimal("10"),
            "estimated_duration_min": Decimal("20"),
        }
        data.update(overrides)
        return PricingContext(**data)

    return _make


def rule_seeder(session_factory):
    """Insert ``PriceRule`` rows; keyword dicts use column names."""

    async def _seed(*rules):
        rows = []
        async with session_factory() as db:
            for columns in rules:
                row = PriceRule(**{**RULE_DEFAULTS, "rule_name": columns["rule_id"], **columns})
                db.add(row)
                rows.append(row)
            await db.commit()
        return rows

    return _seed


@pytest.fixture
def seed_rules(session_factory):
    return rule_seeder(session_factory)


@pytest.fixture
def locking_seed_rules(locking_session_factory):
    return rule_seeder(locking_session_factory)


# S1 rule set, reused by several suites
S1_BASE = {
    "rule_id": "base-std",
    "category": "base_pricing",
    "rule_type": "fixed_amount",
    "pricing_model": "distance_based",
    "base_rate": Decimal("3.00"),
    "per_km_rate": Decimal("1.50"),
    "per_minute_rate": Decimal("0.25"),
    "minimum_fare": Decimal("5.00"),
    "maximum_fare": Decimal("200.00"),
}
S1_SURGE = {
    "rule_id": "surge-peak",
    "category": "surge_pricing",
    "rule_type": "multiplier",
    "surge_multiplier": Decimal("1.5"),
}
S1_DISCOUNT = {
    "rule_id": "disc-20",
    "category": "discount",
    "rule_type": "percentage",
    "discount_percent": Decimal("20"),
    "max_discount": Decimal("10"),
}


@pytest.fixture
def s1_rules():
    return [dict(S1_BASE), dict(S1_SURGE), dict(S1_DISCOUNT)]


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def services(session_factory, cache):
    from ridefare.dependencies import build_services

    return build_services(session_factory, cache)


@pytest.fixture
def locking_services(locking_session_factory, cache):
    from ridefare.dependencies import build_services

    return build_services(locking_session_factory, cache)
