"""
Production Order model

A production order is stored as one row: the indexed columns needed for
lookups and reporting filters, plus the whole aggregate (stages, raw
materials, rollups) as a JSON document. The row is the unit of optimistic
concurrency through its ``version`` column.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from datetime import datetime, timezone

from factoryops.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductionOrderRecord(Base):
    """
    Persisted Production Order aggregate.

    Lifecycle: draft → approved → in_progress → completed | partially_completed
    Operator actions: on_hold, cancelled
    """
    __tablename__ = "production_orders"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String(64), nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)

    # Denormalized for filtering; the document is authoritative
    status = Column(String(50), default='draft', nullable=False, index=True)
    priority = Column(String(20), default='medium', nullable=False)
    customer_order_id = Column(String(64), nullable=True)
    order_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    planned_end_date = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency revision, bumped on every successful save
    version = Column(Integer, nullable=False, default=1)

    # Full aggregate (ProductionOrder schema, JSON mode)
    document = Column(JSON, nullable=False)

    # Metadata
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_production_orders_company_date", "company_id", "order_date"),
        Index("ix_production_orders_company_status_priority", "company_id", "status", "priority"),
        Index("ix_production_orders_company_customer_order", "company_id", "customer_order_id"),
        Index("ix_production_orders_planned_end", "planned_end_date"),
    )

    def __repr__(self):
        return f"<ProductionOrderRecord {self.code}: {self.status} v{self.version}>"
