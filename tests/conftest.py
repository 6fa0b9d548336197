"""
Shared test fixtures for FactoryOps tests

Provides database setup, a controllable clock, ledger, repository and
service fixtures, and actors for two companies.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from factoryops.db.base import Base
from factoryops.services.material_ledger import InMemoryMaterialLedger, SqlMaterialLedger
from factoryops.services.production_order_repository import ProductionOrderRepository
from factoryops.services.production_service import ActorContext, ProductionOrderService

from tests.factories import reset_sequences


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    """Create all tables for testing using SQLAlchemy metadata"""
    # Import all models to ensure they're registered with Base
    import factoryops.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_tables(engine):
    """Drop all tables after testing"""
    Base.metadata.drop_all(bind=engine)


class FrozenClock:
    """Clock the service reads instead of the wall clock; advance() moves it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def _reset_sequences():
    reset_sequences()
    yield


@pytest.fixture
def session_factory():
    """Fresh schema per test; yields the sessionmaker the services use"""
    create_tables(engine)
    try:
        yield TestingSessionLocal
    finally:
        drop_tables(engine)


@pytest.fixture
def db(session_factory):
    """Database session for seeding and inspecting rows"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger():
    """In-memory ledger with stock for the default raw materials"""
    ledger = InMemoryMaterialLedger()
    ledger.add_stock("YARN-01", Decimal("500"))
    ledger.add_stock("DYE-RED", Decimal("40"))
    return ledger


@pytest.fixture
def sql_ledger(session_factory):
    return SqlMaterialLedger(session_factory)


@pytest.fixture
def repository(session_factory):
    return ProductionOrderRepository(session_factory, order_number_prefix="PO")


@pytest.fixture
def service(repository, ledger, clock):
    return ProductionOrderService(repository, ledger, clock=clock)


@pytest.fixture
def actor():
    return ActorContext(company_id="acme-textiles", user_id="u-100", user_name="Priya Shah")


@pytest.fixture
def other_actor():
    return ActorContext(company_id="other-mills", user_id="u-900", user_name="Sam Okoro")
