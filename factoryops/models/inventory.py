"""
Inventory models backing the SQL material ledger
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from decimal import Decimal

from factoryops.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InventoryItem(Base):
    """Raw material stock per item: current, reserved and consumed quantities"""
    __tablename__ = "inventory_items"

    id = Column(String(64), primary_key=True)
    company_id = Column(String(64), nullable=False, index=True)
    code = Column(String(50), nullable=True, index=True)
    name = Column(String(200), nullable=True)
    unit = Column(String(20), default='EA', nullable=False)

    # Quantities
    current_stock = Column(Numeric(18, 4), default=0, nullable=False)
    reserved_stock = Column(Numeric(18, 4), default=0, nullable=False)
    consumed_stock = Column(Numeric(18, 4), default=0, nullable=False)

    cost_price = Column(Numeric(18, 4), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    batches = relationship("InventoryBatch", back_populates="item")

    def __repr__(self):
        return f"<InventoryItem {self.code or self.id}: {self.available_stock}>"

    @property
    def available_stock(self) -> Decimal:
        return Decimal(str(self.current_stock or 0)) - Decimal(str(self.reserved_stock or 0))


class InventoryBatch(Base):
    """Stock of one received batch of an item"""
    __tablename__ = "inventory_batches"

    id = Column(String(64), primary_key=True)
    item_id = Column(String(64), ForeignKey('inventory_items.id'), nullable=False, index=True)
    batch_number = Column(String(100), nullable=False)

    current_quantity = Column(Numeric(18, 4), default=0, nullable=False)
    reserved_quantity = Column(Numeric(18, 4), default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    item = relationship("InventoryItem", back_populates="batches")

    def __repr__(self):
        return f"<InventoryBatch {self.batch_number}: {self.available_quantity}>"

    @property
    def available_quantity(self) -> Decimal:
        return Decimal(str(self.current_quantity or 0)) - Decimal(str(self.reserved_quantity or 0))


class MaterialAllocation(Base):
    """
    A reservation of item (and optionally batch) stock for a production order.

    remaining = reserved - consumed - wasted - released
    """
    __tablename__ = "material_allocations"

    id = Column(String(128), primary_key=True)  # caller-supplied, makes reserve idempotent
    item_id = Column(String(64), ForeignKey('inventory_items.id'), nullable=False, index=True)
    batch_id = Column(String(64), ForeignKey('inventory_batches.id'), nullable=True)

    quantity_reserved = Column(Numeric(18, 4), nullable=False)
    quantity_consumed = Column(Numeric(18, 4), default=0, nullable=False)
    quantity_wasted = Column(Numeric(18, 4), default=0, nullable=False)
    quantity_released = Column(Numeric(18, 4), default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    item = relationship("InventoryItem")
    batch = relationship("InventoryBatch")

    def __repr__(self):
        return f"<MaterialAllocation {self.id}: {self.quantity_remaining} of {self.quantity_reserved}>"

    @property
    def quantity_remaining(self) -> Decimal:
        return (
            Decimal(str(self.quantity_reserved or 0))
            - Decimal(str(self.quantity_consumed or 0))
            - Decimal(str(self.quantity_wasted or 0))
            - Decimal(str(self.quantity_released or 0))
        )


class InventoryTransaction(Base):
    """Audit trail of every ledger movement"""
    __tablename__ = "inventory_transactions"

    id = Column(Integer, primary_key=True, index=True)

    item_id = Column(String(64), ForeignKey('inventory_items.id'), nullable=False, index=True)
    batch_id = Column(String(64), ForeignKey('inventory_batches.id'), nullable=True)
    allocation_id = Column(String(128), ForeignKey('material_allocations.id'), nullable=True, index=True)

    # reservation, consumption, reservation_release, consumption_reversal, release_reversal
    transaction_type = Column(String(50), nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False)
    waste_quantity = Column(Numeric(18, 4), default=0, nullable=False)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<InventoryTransaction {self.transaction_type}: {self.quantity}>"
