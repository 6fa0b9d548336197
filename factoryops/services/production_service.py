"""
Production Order Service

Orchestrates production orders: creation from a stage plan, shop-floor
stage transitions and the operator actions approve, cancel, hold and
release_hold.

Every mutating call follows the same sequence:
1. load the order (scoped to the caller's company) and its version
2. apply the change to a deep copy, then recompute rollups
3. call the material ledger (reserve / consume / release)
4. save with the loaded version as expected version

A failed precondition or ledger call leaves the stored order untouched.
When the save loses a version race, the ledger effect of step 3 is
compensated and the VersionConflictError reaches the caller, who may
reload and retry.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional, Tuple, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from factoryops.core.settings import Settings, get_settings
from factoryops.core.status_config import (
    STAGE_WORK_ORDER_STATUSES,
    ProductionOrderStatus,
    StageAction,
    validate_production_order_transition,
)
from factoryops.exceptions import (
    InvalidTransitionError,
    LedgerCompensationError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
    VersionConflictError,
)
from factoryops.logging_config import get_logger
from factoryops.schemas.production_order import (
    Approval,
    Priority,
    ProcessType,
    ProductionOrder,
    ProductionStage,
    QualityControl,
    RawMaterialLine,
    StageTiming,
    utcnow,
)
from factoryops.schemas.stage_actions import ProductionOrderCreate, parse_action_payload
from factoryops.services import stage_state_machine as machine
from factoryops.services.material_ledger import MaterialLedger
from factoryops.services.production_order_repository import ProductionOrderRepository
from factoryops.services.rollup import apply_rollups

logger = get_logger(__name__)

# (allocation id, compensating ledger call)
_Undo = Tuple[str, Callable[[], Any]]


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, and for which company. Passed explicitly on every call."""
    company_id: str
    user_id: str
    user_name: Optional[str] = None


def _validate(model: Type[BaseModel], data: Any) -> BaseModel:
    """Validate caller input, converting pydantic errors to the package ValidationError."""
    if isinstance(data, model):
        return data
    try:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__}: {e.error_count()} validation error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


class ProductionOrderService:
    """
    Entry point for the surrounding service layer.

    Args:
        repository: production order persistence
        ledger: material ledger used for reserve/consume/release
        settings: defaults for priority and quality-required process types
        clock: returns the current time; defaults to UTC now
    """

    def __init__(
        self,
        repository: ProductionOrderRepository,
        ledger: MaterialLedger,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

    # =========================================================================
    # Helpers
    # =========================================================================

    def _log_extra(self, actor: ActorContext, order: ProductionOrder, **fields) -> dict:
        extra = {
            "company_id": actor.company_id,
            "user_id": actor.user_id,
            "order_number": order.production_order_number,
            "order_status": order.status.value,
            "order_version": order.version,
        }
        extra.update(fields)
        return extra

    def _compensate(self, undo_steps: List[_Undo], order: ProductionOrder, reason: str) -> None:
        """Run compensating ledger calls, newest first."""
        for allocation_id, undo in reversed(undo_steps):
            try:
                undo()
            except Exception as e:
                logger.error(
                    f"Ledger compensation failed for allocation {allocation_id} "
                    f"on {order.production_order_number}: {e}",
                    extra={"allocation_id": allocation_id, "order_number": order.production_order_number},
                )
                raise LedgerCompensationError(
                    f"Could not compensate ledger call on allocation {allocation_id} after {reason}",
                    allocation_id=allocation_id,
                    details={"order_number": order.production_order_number, "error": str(e)},
                ) from e
            logger.warning(
                f"Compensated ledger call on allocation {allocation_id} after {reason}",
                extra={"allocation_id": allocation_id, "order_number": order.production_order_number},
            )

    def _save(self, candidate: ProductionOrder, loaded: ProductionOrder, undo_steps: List[_Undo]) -> ProductionOrder:
        try:
            return self.repository.save(candidate, expected_version=loaded.version)
        except VersionConflictError:
            logger.warning(
                f"Version conflict saving {loaded.production_order_number} at version {loaded.version}",
                extra={"order_number": loaded.production_order_number, "order_version": loaded.version},
            )
            self._compensate(undo_steps, loaded, "version conflict")
            raise
        except Exception:
            self._compensate(undo_steps, loaded, "failed save")
            raise

    @staticmethod
    def _check_quantities(order: ProductionOrder) -> None:
        """Completed plus rejected output may never exceed the ordered quantity."""
        if order.completed_quantity + order.rejected_quantity > order.order_quantity:
            raise InvalidTransitionError(
                f"Completed ({order.completed_quantity}) plus rejected ({order.rejected_quantity}) "
                f"would exceed order quantity {order.order_quantity} on {order.production_order_number}",
                current_state=order.status.value,
            )

    def _quality_required(self, process_type: ProcessType, flag: Optional[bool]) -> bool:
        if flag is not None:
            return flag
        return process_type.value in self.settings.QUALITY_REQUIRED_PROCESS_TYPES

    # =========================================================================
    # Queries
    # =========================================================================

    def get_production_order(self, actor: ActorContext, order_id: int) -> ProductionOrder:
        return self.repository.load(order_id, actor.company_id)

    def get_production_order_by_number(self, actor: ActorContext, order_number: str) -> ProductionOrder:
        """Look up an order by its PREFIX-YYYYMMDD-NNNN number within the caller's company."""
        return self.repository.load_by_number(order_number.strip().upper(), actor.company_id)

    def list_production_orders(self, actor: ActorContext, limit: int = 100, offset: int = 0) -> List[ProductionOrder]:
        return self.repository.list_by_company(actor.company_id, limit=limit, offset=offset)

    def list_by_status(self, actor: ActorContext, status: Union[ProductionOrderStatus, str]) -> List[ProductionOrder]:
        return self.repository.list_by_status(actor.company_id, ProductionOrderStatus(status))

    def list_delayed(self, actor: ActorContext, now: Optional[datetime] = None) -> List[ProductionOrder]:
        return self.repository.list_delayed(actor.company_id, now or self._clock())

    # =========================================================================
    # Creation
    # =========================================================================

    def create_production_order(
        self,
        actor: ActorContext,
        request: Union[ProductionOrderCreate, dict],
    ) -> ProductionOrder:
        """
        Create a draft production order with one pending stage per stage plan
        entry, numbered from 1 in plan order.
        """
        data = _validate(ProductionOrderCreate, request)
        now = self._clock()

        stages = []
        for number, entry in enumerate(data.stage_plan, start=1):
            stages.append(ProductionStage(
                stage_number=number,
                stage_name=entry.stage_name,
                process_type=entry.process_type,
                quality_control=QualityControl(
                    is_required=self._quality_required(entry.process_type, entry.quality_required)
                ),
                timing=StageTiming(
                    planned_start_time=entry.planned_start_time,
                    planned_end_time=entry.planned_end_time,
                    planned_duration=entry.planned_duration,
                ),
                instructions=entry.instructions,
            ))

        raw_materials = [
            RawMaterialLine(
                item_id=m.item_id,
                item_code=m.item_code,
                item_name=m.item_name,
                batch_id=m.batch_id,
                unit=m.unit,
                required_quantity=m.required_quantity,
                rate=m.rate,
            )
            for m in data.raw_materials
        ]

        order = ProductionOrder(
            company_id=actor.company_id,
            order_date=now,
            source_order=data.source_order,
            product=data.product,
            order_quantity=data.order_quantity,
            unit=data.unit,
            raw_materials=raw_materials,
            production_stages=stages,
            priority=data.priority or Priority(self.settings.DEFAULT_PRIORITY),
            status=ProductionOrderStatus.DRAFT,
            schedule=data.schedule,
            special_instructions=data.special_instructions,
            notes=data.notes,
            tags=data.tags,
            created_by=actor.user_id,
            created_at=now,
        )
        apply_rollups(order, now)
        order = self.repository.add(order)

        logger.info(
            f"Created production order {order.production_order_number} "
            f"for {order.order_quantity} {order.unit} with {len(stages)} stage(s)",
            extra=self._log_extra(actor, order),
        )
        return order

    # =========================================================================
    # Stage transitions
    # =========================================================================

    def transition_stage(
        self,
        actor: ActorContext,
        order_id: int,
        stage_number: int,
        action: Union[StageAction, str],
        payload: Any = None,
    ) -> ProductionOrder:
        """
        Apply a shop-floor action to one stage of an order.

        Raises:
            ValidationError: unknown action or malformed payload
            NotFoundError: unknown order (for this company), stage or raw material
            InvalidTransitionError / PreconditionFailedError: action not allowed now
            InsufficientStockError / OverConsumptionError: reported by the ledger
            VersionConflictError: the order changed concurrently; reload and retry
        """
        try:
            action = StageAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown stage action '{action}'",
                field="action",
                value=action,
                details={"allowed": [a.value for a in StageAction]},
            )
        try:
            data = parse_action_payload(action, payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid payload for stage action '{action.value}'",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

        order = self.repository.load(order_id, actor.company_id)
        if order.status not in STAGE_WORK_ORDER_STATUSES:
            raise InvalidTransitionError(
                f"Production order {order.production_order_number} is '{order.status.value}'; "
                f"stage transitions are not accepted",
                current_state=order.status.value,
                allowed_states=sorted(s.value for s in STAGE_WORK_ORDER_STATUSES),
            )

        candidate = order.model_copy(deep=True)
        stage = candidate.get_stage(stage_number)
        if stage is None:
            raise NotFoundError("Production stage", stage_number)

        now = self._clock()
        user = actor.user_id
        consumption = None

        if action == StageAction.START:
            previous = [s for s in candidate.production_stages if s.stage_number < stage_number]
            machine.start_stage(stage, previous, data, user, now)
        elif action == StageAction.HOLD:
            machine.hold_stage(stage, data, user, now)
        elif action == StageAction.RESUME:
            machine.resume_stage(stage, data, user, now)
        elif action == StageAction.RECORD_CONSUMPTION:
            line = candidate.get_raw_material(data.item_id)
            if line is None:
                raise NotFoundError("Raw material", data.item_id)
            if not line.allocation_id:
                raise PreconditionFailedError(
                    f"Raw material {data.item_id} has no allocation on {order.production_order_number}",
                    precondition="material_allocation",
                    current_state=stage.status.value,
                )
            machine.record_consumption(stage, line, data, user, now)
            consumption = (line.allocation_id, data.consumed_quantity, data.waste_quantity)
        elif action == StageAction.RECORD_CHECKPOINT:
            machine.record_checkpoint(stage, data, user, now)
        elif action == StageAction.COMPLETE:
            machine.complete_stage(stage, data, user, now)
        elif action == StageAction.REJECT:
            machine.reject_stage(stage, data, user, now)
        elif action == StageAction.REWORK:
            machine.rework_stage(stage, data, user, now)

        apply_rollups(candidate, now)
        self._check_quantities(candidate)

        undo_steps: List[_Undo] = []
        if consumption is not None:
            allocation_id, quantity, waste = consumption
            # Ledger errors propagate unchanged; nothing has been saved yet
            self.ledger.consume(allocation_id, quantity, waste)
            undo_steps.append(
                (allocation_id, lambda: self.ledger.undo_consume(allocation_id, quantity, waste))
            )

        saved = self._save(candidate, order, undo_steps)
        logger.info(
            f"Stage {stage_number} '{stage.stage_name}' {action.value} on {saved.production_order_number}: "
            f"stage {stage.status.value}, order {saved.status.value}",
            extra=self._log_extra(
                actor, saved, stage_number=stage_number, stage_action=action.value,
                stage_status=stage.status.value,
            ),
        )
        return saved

    # =========================================================================
    # Order-level operator actions
    # =========================================================================

    def approve(self, actor: ActorContext, order_id: int, remarks: Optional[str] = None) -> ProductionOrder:
        """
        Approve a draft order and reserve its raw materials.

        Each raw material line is reserved under its own allocation id. If a
        reservation fails, the reservations already made are released and the
        ledger error is raised unchanged.
        """
        order = self.repository.load(order_id, actor.company_id)
        if order.status != ProductionOrderStatus.DRAFT:
            raise InvalidTransitionError(
                f"Only draft orders can be approved; {order.production_order_number} is '{order.status.value}'",
                current_state=order.status.value,
                allowed_states=[ProductionOrderStatus.DRAFT.value],
            )

        now = self._clock()
        candidate = order.model_copy(deep=True)
        candidate.status = ProductionOrderStatus.APPROVED
        candidate.approved_by = actor.user_id
        candidate.approvals.append(Approval(
            approver_id=actor.user_id,
            approver_name=actor.user_name,
            approved_at=now,
            remarks=remarks,
        ))
        apply_rollups(candidate, now)

        token = uuid.uuid4().hex[:8]
        undo_steps: List[_Undo] = []
        try:
            for line in candidate.raw_materials:
                allocation_id = f"{order.production_order_number}:{line.item_id}:{token}"
                allocation = self.ledger.reserve(allocation_id, line.item_id, line.batch_id, line.required_quantity)
                line.allocation_id = allocation.allocation_id
                line.allocated_quantity = allocation.quantity_reserved
                undo_steps.append((
                    allocation.allocation_id,
                    lambda a=allocation: self.ledger.release(a.allocation_id, a.remaining),
                ))
        except Exception:
            self._compensate(undo_steps, order, "failed reservation")
            raise

        saved = self._save(candidate, order, undo_steps)
        logger.info(
            f"Approved production order {saved.production_order_number}, "
            f"reserved {len(undo_steps)} raw material(s)",
            extra=self._log_extra(actor, saved),
        )
        return saved

    def cancel(self, actor: ActorContext, order_id: int, reason: str) -> ProductionOrder:
        """
        Cancel a non-terminal order, returning reserved but unconsumed
        material to stock. Cancelled orders accept no further transitions.
        """
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required", field="reason")

        order = self.repository.load(order_id, actor.company_id)
        if order.is_terminal:
            raise InvalidTransitionError(
                f"Production order {order.production_order_number} is '{order.status.value}' and cannot be cancelled",
                current_state=order.status.value,
            )
        validate_production_order_transition(order.status, ProductionOrderStatus.CANCELLED)

        now = self._clock()
        candidate = order.model_copy(deep=True)
        candidate.status = ProductionOrderStatus.CANCELLED
        candidate.cancellation_reason = reason
        candidate.status_before_hold = None
        apply_rollups(candidate, now)

        undo_steps: List[_Undo] = []
        released = Decimal("0")
        try:
            for line in candidate.raw_materials:
                if not line.allocation_id:
                    continue
                allocation = self.ledger.get_allocation(line.allocation_id)
                if allocation is None or allocation.remaining <= 0:
                    continue
                quantity = allocation.remaining
                self.ledger.release(allocation.allocation_id, quantity)
                released += quantity
                undo_steps.append((
                    allocation.allocation_id,
                    lambda a=allocation.allocation_id, q=quantity: self.ledger.undo_release(a, q),
                ))
        except Exception:
            self._compensate(undo_steps, order, "failed release")
            raise

        saved = self._save(candidate, order, undo_steps)
        logger.info(
            f"Cancelled production order {saved.production_order_number}: {reason} "
            f"(released {released} of reserved material)",
            extra=self._log_extra(actor, saved, reason=reason),
        )
        return saved

    def hold(self, actor: ActorContext, order_id: int, reason: str) -> ProductionOrder:
        """Put a non-terminal order on hold; stage transitions are refused until release_hold."""
        if not reason or not reason.strip():
            raise ValidationError("Hold reason is required", field="reason")

        order = self.repository.load(order_id, actor.company_id)
        if order.status == ProductionOrderStatus.ON_HOLD:
            raise InvalidTransitionError(
                f"Production order {order.production_order_number} is already on hold",
                current_state=order.status.value,
            )
        validate_production_order_transition(order.status, ProductionOrderStatus.ON_HOLD)

        candidate = order.model_copy(deep=True)
        candidate.status_before_hold = order.status
        candidate.status = ProductionOrderStatus.ON_HOLD
        candidate.hold_reason = reason
        apply_rollups(candidate, self._clock())

        saved = self._save(candidate, order, [])
        logger.info(
            f"Production order {saved.production_order_number} put on hold: {reason}",
            extra=self._log_extra(actor, saved, reason=reason),
        )
        return saved

    def release_hold(self, actor: ActorContext, order_id: int) -> ProductionOrder:
        """Return an on-hold order to draft, or to the status its stages imply."""
        order = self.repository.load(order_id, actor.company_id)
        if order.status != ProductionOrderStatus.ON_HOLD:
            raise InvalidTransitionError(
                f"Production order {order.production_order_number} is not on hold",
                current_state=order.status.value,
                allowed_states=[ProductionOrderStatus.ON_HOLD.value],
            )

        candidate = order.model_copy(deep=True)
        if order.status_before_hold == ProductionOrderStatus.DRAFT:
            candidate.status = ProductionOrderStatus.DRAFT
        else:
            # Re-derived from stage state by the rollup
            candidate.status = ProductionOrderStatus.APPROVED
        candidate.status_before_hold = None
        candidate.hold_reason = None
        apply_rollups(candidate, self._clock())

        saved = self._save(candidate, order, [])
        logger.info(
            f"Released hold on production order {saved.production_order_number}, now {saved.status.value}",
            extra=self._log_extra(actor, saved),
        )
        return saved
