"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers and shared fixtures
WHY: Every test gets an isolated database and a fresh set of engine components
HOW: In-memory SQLite per test, seeded users/items, components built per test
"""

import pytest
from types import SimpleNamespace

from app.core.database import build_engine, build_session_factory, init_db
from app.services.connection_registry import ConnectionRegistry
from app.services.inventory_store import InventoryStore
from app.services.negotiation_engine import LiveTradeEngine
from app.services.notification_sink import NotificationSink
from app.services.settlement import SettlementExecutor
from tests.fixtures.trade_data import create_user, create_item, give


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )


@pytest.fixture
def db_engine():
    """
    Fresh in-memory database for each test.

    WHAT: Setup and teardown test database
    WHY: Ensure test isolation
    HOW: sqlite:// on a StaticPool, tables created up front
    """
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_db_engine(tmp_path):
    """
    File-backed SQLite database.

    Concurrent settlements need a connection per worker thread; the in-memory
    database shares a single connection. Classes that race settlements
    override `db_engine` with this one.
    """
    engine = build_engine(f"sqlite:///{tmp_path}/trades.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def world(session_factory):
    """
    Seeded users and inventories.

    alice: sword x5, shield x3, cursed ring x1 (not tradeable)
    bob:   gem x4, sword x1
    carol: nothing
    """
    alice = create_user(session_factory, "alice")
    bob = create_user(session_factory, "bob")
    carol = create_user(session_factory, "carol")

    sword = create_item(session_factory, "Sword", image_url="/img/sword.png")
    shield = create_item(session_factory, "Shield")
    gem = create_item(session_factory, "Gem")
    cursed_ring = create_item(session_factory, "Cursed Ring", is_tradeable=False)

    give(session_factory, alice, sword, 5)
    give(session_factory, alice, shield, 3)
    give(session_factory, alice, cursed_ring, 1)
    give(session_factory, bob, gem, 4)
    give(session_factory, bob, sword, 1)

    return SimpleNamespace(
        alice=alice, bob=bob, carol=carol,
        sword=sword, shield=shield, gem=gem, cursed_ring=cursed_ring,
    )


@pytest.fixture
def trade_env(session_factory):
    """Engine wired to the test database, with its collaborators exposed."""
    registry = ConnectionRegistry()
    inventory = InventoryStore(session_factory)
    settlement = SettlementExecutor(inventory)
    notifications = NotificationSink(session_factory)
    engine = LiveTradeEngine(
        registry=registry,
        inventory=inventory,
        settlement=settlement,
        notifications=notifications,
        pending_ttl_seconds=300,
        active_ttl_seconds=0,
        max_items_per_side=5,
    )
    return SimpleNamespace(
        engine=engine,
        registry=registry,
        inventory=inventory,
        settlement=settlement,
        notifications=notifications,
        factory=session_factory,
    )
