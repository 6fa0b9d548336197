"""
Production Order Repository

Persists the production order aggregate as one row per order. save() is a
compare-and-swap on the version column: the UPDATE matches only the row
version the caller loaded, so of two concurrent writers exactly one wins.
"""
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import desc, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factoryops.core.settings import get_settings
from factoryops.core.status_config import ProductionOrderStatus
from factoryops.exceptions import DuplicateError, NotFoundError, VersionConflictError
from factoryops.logging_config import get_logger
from factoryops.models.production_order import ProductionOrderRecord
from factoryops.schemas.production_order import ProductionOrder, as_utc, utcnow

logger = get_logger(__name__)

# Attempts at claiming a fresh order number before giving up
_MAX_NUMBER_ATTEMPTS = 3


def _to_document(order: ProductionOrder) -> dict:
    return order.model_dump(mode="json", exclude={"id", "version"})


def _from_record(record: ProductionOrderRecord) -> ProductionOrder:
    order = ProductionOrder.model_validate(record.document)
    order.id = record.id
    order.version = record.version
    return order


class ProductionOrderRepository:
    """Load/save access to production orders, scoped by company."""

    def __init__(self, session_factory: Callable[[], Session], order_number_prefix: Optional[str] = None):
        self._session_factory = session_factory
        self._prefix = order_number_prefix or get_settings().ORDER_NUMBER_PREFIX

    def generate_order_number(self, db: Session, order_date: datetime) -> str:
        """Next order number in format PREFIX-YYYYMMDD-NNNN"""
        stamp = f"{self._prefix}-{order_date:%Y%m%d}-"
        last = (
            db.query(ProductionOrderRecord)
            .filter(ProductionOrderRecord.code.like(f"{stamp}%"))
            .order_by(desc(ProductionOrderRecord.code))
            .first()
        )
        if last:
            next_num = int(last.code.rsplit("-", 1)[1]) + 1
        else:
            next_num = 1
        return f"{stamp}{next_num:04d}"

    def add(self, order: ProductionOrder) -> ProductionOrder:
        """Insert a new order; assigns id, order number and version 1."""
        for attempt in range(1, _MAX_NUMBER_ATTEMPTS + 1):
            try:
                with self._session_factory() as db, db.begin():
                    code = order.production_order_number or self.generate_order_number(db, order.order_date)
                    stored = order.model_copy(update={"production_order_number": code, "version": 1})
                    record = ProductionOrderRecord(
                        company_id=stored.company_id,
                        code=code,
                        status=stored.status.value,
                        priority=stored.priority.value,
                        customer_order_id=stored.source_order.customer_order_id if stored.source_order else None,
                        order_date=stored.order_date,
                        planned_end_date=stored.schedule.planned_end_date,
                        version=1,
                        document=_to_document(stored),
                        created_by=stored.created_by,
                    )
                    db.add(record)
                    db.flush()
                    stored.id = record.id
                    return stored
            except IntegrityError:
                if order.production_order_number or attempt == _MAX_NUMBER_ATTEMPTS:
                    raise DuplicateError(
                        "Production order",
                        field="production_order_number",
                        value=order.production_order_number,
                    )
                logger.warning(f"Order number collision on attempt {attempt}, retrying")

    def load(self, order_id: int, company_id: str) -> ProductionOrder:
        """
        Load an order of the given company.

        Raises:
            NotFoundError: no such order, or it belongs to another company
        """
        with self._session_factory() as db:
            record = db.query(ProductionOrderRecord).filter(
                ProductionOrderRecord.id == order_id,
                ProductionOrderRecord.company_id == company_id,
            ).first()
            if record is None:
                raise NotFoundError("Production order", order_id)
            return _from_record(record)

    def load_by_number(self, order_number: str, company_id: str) -> ProductionOrder:
        with self._session_factory() as db:
            record = db.query(ProductionOrderRecord).filter(
                ProductionOrderRecord.code == order_number,
                ProductionOrderRecord.company_id == company_id,
            ).first()
            if record is None:
                raise NotFoundError("Production order", order_number)
            return _from_record(record)

    def save(self, order: ProductionOrder, expected_version: int) -> ProductionOrder:
        """
        Write the order if its stored version still equals expected_version.

        Returns the order carrying its new version.

        Raises:
            VersionConflictError: the order changed since it was loaded
        """
        new_version = expected_version + 1
        stored = order.model_copy(update={"version": new_version})
        with self._session_factory() as db, db.begin():
            result = db.execute(
                update(ProductionOrderRecord)
                .where(
                    ProductionOrderRecord.id == order.id,
                    ProductionOrderRecord.company_id == order.company_id,
                    ProductionOrderRecord.version == expected_version,
                )
                .values(
                    version=new_version,
                    status=stored.status.value,
                    priority=stored.priority.value,
                    planned_end_date=stored.schedule.planned_end_date,
                    document=_to_document(stored),
                    updated_at=stored.updated_at,
                )
            )
            if result.rowcount == 0:
                raise VersionConflictError(
                    f"Production order {order.production_order_number} was modified since version "
                    f"{expected_version} was loaded",
                    expected_version=expected_version,
                )
        return stored

    # =========================================================================
    # Read-only queries
    # =========================================================================

    def list_by_company(self, company_id: str, limit: int = 100, offset: int = 0) -> List[ProductionOrder]:
        with self._session_factory() as db:
            records = (
                db.query(ProductionOrderRecord)
                .filter(ProductionOrderRecord.company_id == company_id)
                .order_by(desc(ProductionOrderRecord.order_date), desc(ProductionOrderRecord.id))
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_from_record(r) for r in records]

    def list_by_status(self, company_id: str, status: ProductionOrderStatus) -> List[ProductionOrder]:
        status_value = status.value if isinstance(status, ProductionOrderStatus) else str(status)
        with self._session_factory() as db:
            records = (
                db.query(ProductionOrderRecord)
                .filter(
                    ProductionOrderRecord.company_id == company_id,
                    ProductionOrderRecord.status == status_value,
                )
                .order_by(ProductionOrderRecord.id)
                .all()
            )
            return [_from_record(r) for r in records]

    def list_delayed(self, company_id: str, now: Optional[datetime] = None) -> List[ProductionOrder]:
        """Orders past their planned end date that are neither completed nor cancelled"""
        now = as_utc(now) or utcnow()
        with self._session_factory() as db:
            records = (
                db.query(ProductionOrderRecord)
                .filter(
                    ProductionOrderRecord.company_id == company_id,
                    ProductionOrderRecord.planned_end_date.isnot(None),
                    ProductionOrderRecord.planned_end_date < now,
                    ProductionOrderRecord.status.notin_([
                        ProductionOrderStatus.COMPLETED.value,
                        ProductionOrderStatus.CANCELLED.value,
                    ]),
                )
                .order_by(ProductionOrderRecord.planned_end_date)
                .all()
            )
            return [_from_record(r) for r in records]
