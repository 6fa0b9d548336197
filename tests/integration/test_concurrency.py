"""
Concurrency tests: two requests racing on the same production order.

Uses a file-backed SQLite database so each thread gets its own connection.
A barrier inside load() makes both requests read the same order version
before either writes.
"""
import threading
import pytest
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from factoryops.core.status_config import ProductionOrderStatus, StageStatus
from factoryops.db.session import init_db
from factoryops.exceptions import InvalidTransitionError, VersionConflictError
from factoryops.services.material_ledger import InMemoryMaterialLedger
from factoryops.services.production_order_repository import ProductionOrderRepository
from factoryops.services.production_service import ActorContext, ProductionOrderService

from tests.factories import complete_payload, create_approved_order, start_payload

pytestmark = pytest.mark.integration


class _BarrierRepository(ProductionOrderRepository):
    """Waits for every racing request to finish loading before any of them saves."""

    def __init__(self, session_factory, barrier: threading.Barrier):
        super().__init__(session_factory, order_number_prefix="PO")
        self.barrier = barrier
        self.armed = False

    def load(self, order_id, company_id):
        order = super().load(order_id, company_id)
        if self.armed:
            self.barrier.wait(timeout=10)
        return order


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'factoryops.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def racing_setup(file_session_factory):
    barrier = threading.Barrier(2)
    repository = _BarrierRepository(file_session_factory, barrier)
    ledger = InMemoryMaterialLedger()
    ledger.add_stock("YARN-01", Decimal("500"))
    service = ProductionOrderService(repository, ledger)
    actor = ActorContext(company_id="acme-textiles", user_id="u-100")
    return service, repository, actor


def _race(calls):
    """Run the calls in parallel threads; returns ('ok', order) or ('error', exc) per call."""
    results = [None] * len(calls)

    def run(index, call):
        try:
            results[index] = ("ok", call())
        except Exception as e:  # collected for assertions
            results[index] = ("error", e)

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


class TestSameOrderRace:

    def test_two_completions_exactly_one_wins(self, racing_setup):
        """Both requests would complete 98 of 100; together they would overdraw the order."""
        service, repository, actor = racing_setup
        order = create_approved_order(service, actor)
        service.transition_stage(actor, order.id, 1, "start", start_payload())
        repository.armed = True

        results = _race([
            lambda: service.transition_stage(actor, order.id, 1, "complete", complete_payload("98")),
            lambda: service.transition_stage(actor, order.id, 1, "complete", complete_payload("98")),
        ])
        repository.armed = False

        outcomes = sorted(kind for kind, _ in results)
        assert outcomes == ["error", "ok"]
        error = next(value for kind, value in results if kind == "error")
        assert isinstance(error, (VersionConflictError, InvalidTransitionError))

        final = service.get_production_order(actor, order.id)
        assert final.completed_quantity == Decimal("98")
        assert final.pending_quantity == Decimal("2")
        assert final.get_stage(1).status == StageStatus.COMPLETED

    def test_complete_races_cancel(self, racing_setup):
        service, repository, actor = racing_setup
        order = create_approved_order(service, actor)
        service.transition_stage(actor, order.id, 1, "start", start_payload())
        repository.armed = True

        results = _race([
            lambda: service.transition_stage(actor, order.id, 1, "complete", complete_payload("100")),
            lambda: service.cancel(actor, order.id, "customer withdrew"),
        ])
        repository.armed = False

        assert sorted(kind for kind, _ in results) == ["error", "ok"]
        final = service.get_production_order(actor, order.id)
        assert final.status in (ProductionOrderStatus.COMPLETED, ProductionOrderStatus.CANCELLED)
        # The losing cancel's release was compensated, or the winning cancel released it all
        line = final.get_raw_material("YARN-01")
        released = service.ledger.get_allocation(line.allocation_id).quantity_released
        if final.status == ProductionOrderStatus.COMPLETED:
            assert released == 0
        else:
            assert released == Decimal("60")


class TestDifferentOrders:

    def test_different_orders_proceed_in_parallel(self, racing_setup):
        service, repository, actor = racing_setup
        first = create_approved_order(service, actor)
        second = create_approved_order(service, actor)
        repository.armed = True

        results = _race([
            lambda: service.transition_stage(actor, first.id, 1, "start", start_payload()),
            lambda: service.transition_stage(actor, second.id, 1, "start", start_payload()),
        ])
        repository.armed = False

        assert [kind for kind, _ in results] == ["ok", "ok"]
        for order_id in (first.id, second.id):
            assert service.get_production_order(actor, order_id).status == ProductionOrderStatus.IN_PROGRESS
