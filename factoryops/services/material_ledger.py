"""
Material Ledger

Stock access for production orders: reserve raw material at approval,
consume it as stages record usage, release what is left on cancellation.

Every call is individually atomic. No transaction spans a ledger call and
the production order save, so the order service uses undo_consume and
undo_release to compensate when its save loses a version race.

Implementations:
- InMemoryMaterialLedger: thread-safe, for tests and embedding
- SqlMaterialLedger: inventory tables with row locks and an audit trail
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factoryops.exceptions import (
    BusinessRuleError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    OverConsumptionError,
    ValidationError,
)
from factoryops.logging_config import get_logger
from factoryops.models.inventory import (
    InventoryBatch,
    InventoryItem,
    InventoryTransaction,
    MaterialAllocation,
)

logger = get_logger(__name__)

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


@dataclass(frozen=True)
class Allocation:
    """Snapshot of a reservation after a ledger call"""
    allocation_id: str
    item_id: str
    batch_id: Optional[str]
    quantity_reserved: Decimal
    quantity_consumed: Decimal = ZERO
    quantity_wasted: Decimal = ZERO
    quantity_released: Decimal = ZERO

    @property
    def remaining(self) -> Decimal:
        return self.quantity_reserved - self.quantity_consumed - self.quantity_wasted - self.quantity_released


def _check_positive(quantity: Decimal, field: str) -> None:
    if quantity < 0:
        raise ValidationError(f"{field} must not be negative", field=field, value=quantity)


class MaterialLedger(ABC):
    """Contract the production engine consumes for raw material stock"""

    @abstractmethod
    def reserve(self, allocation_id: str, item_id: str, batch_id: Optional[str], quantity: Decimal) -> Allocation:
        """
        Reserve stock under a caller-chosen allocation id.

        Idempotent: reserving an existing allocation id returns it unchanged.

        Raises:
            InsufficientStockError: available item (or batch) stock is short
        """

    @abstractmethod
    def consume(self, allocation_id: str, quantity: Decimal, waste_quantity: Decimal = ZERO) -> Allocation:
        """
        Draw consumed plus wasted quantity from an allocation.

        Raises:
            OverConsumptionError: quantity + waste exceeds what is still reserved
        """

    @abstractmethod
    def release(self, allocation_id: str, quantity: Decimal) -> Allocation:
        """Return reserved, unconsumed material to available stock"""

    @abstractmethod
    def undo_consume(self, allocation_id: str, quantity: Decimal, waste_quantity: Decimal = ZERO) -> Allocation:
        """Reverse a consume call"""

    @abstractmethod
    def undo_release(self, allocation_id: str, quantity: Decimal) -> Allocation:
        """Reverse a release call"""

    @abstractmethod
    def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        ...


# =============================================================================
# In-memory ledger
# =============================================================================

@dataclass
class _StockLevel:
    current: Decimal = ZERO
    reserved: Decimal = ZERO
    consumed: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.current - self.reserved


class InMemoryMaterialLedger(MaterialLedger):
    """
    Dictionary-backed ledger guarded by a single lock.

    Seed stock with add_stock(); inspect it with available() and stock().
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._items: Dict[str, _StockLevel] = {}
        self._batches: Dict[str, _StockLevel] = {}
        self._allocations: Dict[str, Allocation] = {}

    def add_stock(self, item_id: str, quantity: Decimal, batch_id: Optional[str] = None) -> None:
        with self._lock:
            self._items.setdefault(item_id, _StockLevel()).current += quantity
            if batch_id:
                self._batches.setdefault(batch_id, _StockLevel()).current += quantity

    def stock(self, item_id: str) -> _StockLevel:
        with self._lock:
            return replace(self._items.get(item_id, _StockLevel()))

    def available(self, item_id: str, batch_id: Optional[str] = None) -> Decimal:
        with self._lock:
            if batch_id:
                return self._batches.get(batch_id, _StockLevel()).available
            return self._items.get(item_id, _StockLevel()).available

    def _levels(self, allocation: Allocation):
        levels = [self._items.setdefault(allocation.item_id, _StockLevel())]
        if allocation.batch_id:
            levels.append(self._batches.setdefault(allocation.batch_id, _StockLevel()))
        return levels

    def _get(self, allocation_id: str) -> Allocation:
        allocation = self._allocations.get(allocation_id)
        if allocation is None:
            raise NotFoundError("Allocation", allocation_id)
        return allocation

    def reserve(self, allocation_id, item_id, batch_id, quantity):
        _check_positive(quantity, "quantity")
        with self._lock:
            existing = self._allocations.get(allocation_id)
            if existing is not None:
                if existing.item_id != item_id:
                    raise ConflictError(
                        f"Allocation {allocation_id} already reserves item {existing.item_id}",
                        details={"allocation_id": allocation_id},
                    )
                return existing

            item = self._items.get(item_id, _StockLevel())
            if item.available < quantity:
                raise InsufficientStockError(item_id, requested=quantity, available=item.available)
            if batch_id:
                batch = self._batches.get(batch_id, _StockLevel())
                if batch.available < quantity:
                    raise InsufficientStockError(
                        item_id, requested=quantity, available=batch.available, batch_id=batch_id
                    )

            allocation = Allocation(allocation_id, item_id, batch_id, quantity_reserved=quantity)
            for level in self._levels(allocation):
                level.reserved += quantity
            self._allocations[allocation_id] = allocation
            return allocation

    def consume(self, allocation_id, quantity, waste_quantity=ZERO):
        _check_positive(quantity, "quantity")
        _check_positive(waste_quantity, "waste_quantity")
        drawn = quantity + waste_quantity
        with self._lock:
            allocation = self._get(allocation_id)
            if drawn > allocation.remaining:
                raise OverConsumptionError(allocation_id, requested=drawn, remaining=allocation.remaining)
            for level in self._levels(allocation):
                level.reserved -= drawn
                level.current -= drawn
                level.consumed += drawn
            allocation = replace(
                allocation,
                quantity_consumed=allocation.quantity_consumed + quantity,
                quantity_wasted=allocation.quantity_wasted + waste_quantity,
            )
            self._allocations[allocation_id] = allocation
            return allocation

    def release(self, allocation_id, quantity):
        _check_positive(quantity, "quantity")
        with self._lock:
            allocation = self._get(allocation_id)
            if quantity > allocation.remaining:
                raise BusinessRuleError(
                    f"Cannot release {quantity} from allocation {allocation_id}; "
                    f"only {allocation.remaining} remains reserved",
                    rule="release_exceeds_reserved",
                )
            for level in self._levels(allocation):
                level.reserved -= quantity
            allocation = replace(allocation, quantity_released=allocation.quantity_released + quantity)
            self._allocations[allocation_id] = allocation
            return allocation

    def undo_consume(self, allocation_id, quantity, waste_quantity=ZERO):
        drawn = quantity + waste_quantity
        with self._lock:
            allocation = self._get(allocation_id)
            for level in self._levels(allocation):
                level.reserved += drawn
                level.current += drawn
                level.consumed -= drawn
            allocation = replace(
                allocation,
                quantity_consumed=allocation.quantity_consumed - quantity,
                quantity_wasted=allocation.quantity_wasted - waste_quantity,
            )
            self._allocations[allocation_id] = allocation
            return allocation

    def undo_release(self, allocation_id, quantity):
        with self._lock:
            allocation = self._get(allocation_id)
            for level in self._levels(allocation):
                level.reserved += quantity
            allocation = replace(allocation, quantity_released=allocation.quantity_released - quantity)
            self._allocations[allocation_id] = allocation
            return allocation

    def get_allocation(self, allocation_id):
        with self._lock:
            return self._allocations.get(allocation_id)


# =============================================================================
# SQL ledger
# =============================================================================

class SqlMaterialLedger(MaterialLedger):
    """
    Ledger over the inventory tables.

    Each call runs in its own committed transaction and locks the allocation,
    item and batch rows it touches, so reservations against the same item
    from different orders are serialized by the database.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _snapshot(row: MaterialAllocation) -> Allocation:
        return Allocation(
            allocation_id=row.id,
            item_id=row.item_id,
            batch_id=row.batch_id,
            quantity_reserved=_dec(row.quantity_reserved),
            quantity_consumed=_dec(row.quantity_consumed),
            quantity_wasted=_dec(row.quantity_wasted),
            quantity_released=_dec(row.quantity_released),
        )

    @staticmethod
    def _lock_allocation(db: Session, allocation_id: str) -> MaterialAllocation:
        row = db.query(MaterialAllocation).filter(
            MaterialAllocation.id == allocation_id
        ).with_for_update().first()
        if row is None:
            raise NotFoundError("Allocation", allocation_id)
        return row

    @staticmethod
    def _lock_stock(db: Session, item_id: str, batch_id: Optional[str]):
        item = db.query(InventoryItem).filter(InventoryItem.id == item_id).with_for_update().first()
        if item is None:
            raise NotFoundError("Inventory item", item_id)
        batch = None
        if batch_id:
            batch = db.query(InventoryBatch).filter(
                InventoryBatch.id == batch_id,
                InventoryBatch.item_id == item_id,
            ).with_for_update().first()
            if batch is None:
                raise NotFoundError("Inventory batch", batch_id)
        return item, batch

    @staticmethod
    def _audit(db: Session, row: MaterialAllocation, transaction_type: str, quantity: Decimal,
               waste_quantity: Decimal = ZERO, notes: Optional[str] = None) -> None:
        db.add(InventoryTransaction(
            item_id=row.item_id,
            batch_id=row.batch_id,
            allocation_id=row.id,
            transaction_type=transaction_type,
            quantity=quantity,
            waste_quantity=waste_quantity,
            notes=notes,
        ))

    def reserve(self, allocation_id, item_id, batch_id, quantity):
        _check_positive(quantity, "quantity")
        try:
            with self._session_factory() as db, db.begin():
                existing = db.query(MaterialAllocation).filter(
                    MaterialAllocation.id == allocation_id
                ).with_for_update().first()
                if existing is not None:
                    if existing.item_id != item_id:
                        raise ConflictError(
                            f"Allocation {allocation_id} already reserves item {existing.item_id}",
                            details={"allocation_id": allocation_id},
                        )
                    return self._snapshot(existing)

                item, batch = self._lock_stock(db, item_id, batch_id)
                if item.available_stock < quantity:
                    raise InsufficientStockError(item_id, requested=quantity, available=item.available_stock)
                if batch is not None and batch.available_quantity < quantity:
                    raise InsufficientStockError(
                        item_id, requested=quantity, available=batch.available_quantity, batch_id=batch_id
                    )

                item.reserved_stock = _dec(item.reserved_stock) + quantity
                if batch is not None:
                    batch.reserved_quantity = _dec(batch.reserved_quantity) + quantity

                row = MaterialAllocation(
                    id=allocation_id,
                    item_id=item_id,
                    batch_id=batch_id,
                    quantity_reserved=quantity,
                    quantity_consumed=ZERO,
                    quantity_wasted=ZERO,
                    quantity_released=ZERO,
                )
                db.add(row)
                db.flush()
                self._audit(db, row, "reservation", quantity, notes=f"Reserved under {allocation_id}")
                allocation = self._snapshot(row)
        except IntegrityError:
            # Lost a race to create the same allocation id
            existing = self.get_allocation(allocation_id)
            if existing is None:
                raise
            return existing

        logger.info(f"Reserved {quantity} of {item_id} under allocation {allocation_id}")
        return allocation

    def consume(self, allocation_id, quantity, waste_quantity=ZERO):
        _check_positive(quantity, "quantity")
        _check_positive(waste_quantity, "waste_quantity")
        drawn = quantity + waste_quantity
        with self._session_factory() as db, db.begin():
            row = self._lock_allocation(db, allocation_id)
            if drawn > row.quantity_remaining:
                raise OverConsumptionError(allocation_id, requested=drawn, remaining=row.quantity_remaining)
            item, batch = self._lock_stock(db, row.item_id, row.batch_id)

            item.reserved_stock = _dec(item.reserved_stock) - drawn
            item.current_stock = _dec(item.current_stock) - drawn
            item.consumed_stock = _dec(item.consumed_stock) + drawn
            if batch is not None:
                batch.reserved_quantity = _dec(batch.reserved_quantity) - drawn
                batch.current_quantity = _dec(batch.current_quantity) - drawn

            row.quantity_consumed = _dec(row.quantity_consumed) + quantity
            row.quantity_wasted = _dec(row.quantity_wasted) + waste_quantity
            self._audit(db, row, "consumption", quantity, waste_quantity)
            return self._snapshot(row)

    def release(self, allocation_id, quantity):
        _check_positive(quantity, "quantity")
        with self._session_factory() as db, db.begin():
            row = self._lock_allocation(db, allocation_id)
            if quantity > row.quantity_remaining:
                raise BusinessRuleError(
                    f"Cannot release {quantity} from allocation {allocation_id}; "
                    f"only {row.quantity_remaining} remains reserved",
                    rule="release_exceeds_reserved",
                )
            item, batch = self._lock_stock(db, row.item_id, row.batch_id)

            item.reserved_stock = max(ZERO, _dec(item.reserved_stock) - quantity)
            if batch is not None:
                batch.reserved_quantity = max(ZERO, _dec(batch.reserved_quantity) - quantity)

            row.quantity_released = _dec(row.quantity_released) + quantity
            self._audit(db, row, "reservation_release", quantity, notes=f"Released from {allocation_id}")
            allocation = self._snapshot(row)

        logger.info(f"Released reservation of {quantity} from allocation {allocation_id}")
        return allocation

    def undo_consume(self, allocation_id, quantity, waste_quantity=ZERO):
        drawn = quantity + waste_quantity
        with self._session_factory() as db, db.begin():
            row = self._lock_allocation(db, allocation_id)
            item, batch = self._lock_stock(db, row.item_id, row.batch_id)

            item.reserved_stock = _dec(item.reserved_stock) + drawn
            item.current_stock = _dec(item.current_stock) + drawn
            item.consumed_stock = _dec(item.consumed_stock) - drawn
            if batch is not None:
                batch.reserved_quantity = _dec(batch.reserved_quantity) + drawn
                batch.current_quantity = _dec(batch.current_quantity) + drawn

            row.quantity_consumed = _dec(row.quantity_consumed) - quantity
            row.quantity_wasted = _dec(row.quantity_wasted) - waste_quantity
            self._audit(db, row, "consumption_reversal", quantity, waste_quantity)
            return self._snapshot(row)

    def undo_release(self, allocation_id, quantity):
        with self._session_factory() as db, db.begin():
            row = self._lock_allocation(db, allocation_id)
            item, batch = self._lock_stock(db, row.item_id, row.batch_id)

            item.reserved_stock = _dec(item.reserved_stock) + quantity
            if batch is not None:
                batch.reserved_quantity = _dec(batch.reserved_quantity) + quantity

            row.quantity_released = _dec(row.quantity_released) - quantity
            self._audit(db, row, "release_reversal", quantity)
            return self._snapshot(row)

    def get_allocation(self, allocation_id):
        with self._session_factory() as db:
            row = db.query(MaterialAllocation).filter(MaterialAllocation.id == allocation_id).first()
            return self._snapshot(row) if row is not None else None
