"""
Production Order Pydantic Schemas

The production order aggregate: the order itself, its ordered production
stages and the value objects stages own (assignments, consumption entries,
quality checkpoints, output, costs). Stages and raw-material lines have no
identity outside their order.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from factoryops.core.status_config import (
    ProductionOrderStatus,
    StageStatus,
    TERMINAL_ORDER_STATUSES,
    TERMINAL_STAGE_STATUSES,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
_TWO_PLACES = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware values."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def display_round(value: Decimal) -> Decimal:
    """Round to 2 decimal places for display; stored values stay unrounded."""
    return Decimal(value).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


# ============================================================================
# Enums
# ============================================================================

class ProcessType(str, Enum):
    """Production stage process type (a reporting label only)"""
    PRINTING = "printing"
    WASHING = "washing"
    FIXING = "fixing"
    STITCHING = "stitching"
    FINISHING = "finishing"
    QUALITY_CHECK = "quality_check"


class ProductType(str, Enum):
    """Product category of the goods being produced"""
    SAREE = "saree"
    AFRICAN_COTTON = "african_cotton"
    GARMENT_FABRIC = "garment_fabric"
    DIGITAL_PRINT = "digital_print"
    CUSTOM = "custom"


class Priority(str, Enum):
    """Production order priority"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    RUSH = "rush"


class QualityGrade(str, Enum):
    """Final quality grade, best first"""
    A_PLUS = "A+"
    A = "A"
    B_PLUS = "B+"
    B = "B"
    C = "C"
    REJECT = "Reject"


# Worst grade last; used for the order's overall grade
QUALITY_GRADE_ORDER: List[QualityGrade] = list(QualityGrade)


class CheckpointResult(str, Enum):
    """Outcome of a single quality checkpoint"""
    PASS = "pass"
    FAIL = "fail"
    REWORK = "rework"


# ============================================================================
# Product & raw materials
# ============================================================================

class ProductSpec(BaseModel):
    """What is being produced. Attributes are opaque labels (design, color, gsm, ...)."""
    product_type: ProductType
    attributes: Dict[str, Any] = Field(default_factory=dict)


class RawMaterialLine(BaseModel):
    """
    A raw material required by the order.

    allocated_quantity is what the ledger reserved at approval; consumed and
    waste quantities and total_cost are recomputed from stage consumption.
    """
    item_id: str
    item_code: Optional[str] = None
    item_name: Optional[str] = None
    batch_id: Optional[str] = None
    unit: Optional[str] = None
    required_quantity: Decimal = Field(..., ge=0)
    allocated_quantity: Decimal = Field(ZERO, ge=0)
    consumed_quantity: Decimal = Field(ZERO, ge=0)
    waste_quantity: Decimal = Field(ZERO, ge=0)
    rate: Decimal = Field(ZERO, ge=0)
    total_cost: Decimal = Field(ZERO, ge=0)
    allocation_id: Optional[str] = None

    @property
    def unconsumed_quantity(self) -> Decimal:
        """Reserved quantity not yet consumed or wasted"""
        return max(ZERO, self.allocated_quantity - self.consumed_quantity - self.waste_quantity)


# ============================================================================
# Stage value objects
# ============================================================================

class WorkerAssignment(BaseModel):
    worker_id: str
    worker_name: Optional[str] = None
    role: Optional[str] = None
    assigned_at: Optional[datetime] = None
    hours_worked: Decimal = Field(ZERO, ge=0)
    hourly_rate: Decimal = Field(ZERO, ge=0)
    total_cost: Decimal = Field(ZERO, ge=0)


class MachineAssignment(BaseModel):
    machine_id: str
    machine_name: Optional[str] = None
    assigned_at: Optional[datetime] = None
    hours_used: Decimal = Field(ZERO, ge=0)
    hourly_rate: Decimal = Field(ZERO, ge=0)
    total_cost: Decimal = Field(ZERO, ge=0)


class JobWork(BaseModel):
    """Stage work subcontracted to an external job worker"""
    job_worker_id: str
    job_worker_name: Optional[str] = None
    job_worker_rate: Decimal = Field(ZERO, ge=0)  # per produced unit
    expected_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    job_work_cost: Decimal = Field(ZERO, ge=0)
    quality_agreement: Optional[str] = None


class StageAssignment(BaseModel):
    workers: List[WorkerAssignment] = Field(default_factory=list)
    machines: List[MachineAssignment] = Field(default_factory=list)
    job_work: Optional[JobWork] = None

    @property
    def has_resources(self) -> bool:
        return bool(self.workers or self.machines or self.job_work)


class StageTiming(BaseModel):
    """Informational timing; feeds delay detection only. Durations in minutes."""
    planned_start_time: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    planned_end_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    planned_duration: Optional[Decimal] = Field(None, ge=0)
    actual_duration: Optional[Decimal] = Field(None, ge=0)
    break_time: Decimal = Field(ZERO, ge=0)
    overtime_hours: Decimal = Field(ZERO, ge=0)
    held_since: Optional[datetime] = None


class MaterialConsumption(BaseModel):
    """One recorded consumption fact; never edited once appended."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    item_name: Optional[str] = None
    consumed_quantity: Decimal = Field(..., ge=0)
    waste_quantity: Decimal = Field(ZERO, ge=0)
    unit: Optional[str] = None
    rate: Decimal = Field(ZERO, ge=0)
    batch_number: Optional[str] = None
    consumed_by: Optional[str] = None
    consumed_at: datetime

    @property
    def waste_percentage(self) -> Decimal:
        """Waste share of everything drawn from stock, rounded for display"""
        drawn = self.consumed_quantity + self.waste_quantity
        if drawn == 0:
            return ZERO
        return display_round(self.waste_quantity / drawn * HUNDRED)


class QualityCheckpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    checkpoint_name: Optional[str] = None
    parameter: str
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None
    status: CheckpointResult
    checked_by: Optional[str] = None
    checked_at: datetime
    remarks: Optional[str] = None


class FinalQuality(BaseModel):
    checked_by: Optional[str] = None
    checked_at: Optional[datetime] = None
    quality_grade: Optional[QualityGrade] = None
    defects: List[str] = Field(default_factory=list)
    defect_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    approved_quantity: Decimal = Field(ZERO, ge=0)
    rejected_quantity: Decimal = Field(ZERO, ge=0)
    rework_quantity: Decimal = Field(ZERO, ge=0)
    quality_notes: Optional[str] = None


class QualityControl(BaseModel):
    is_required: bool = False
    checkpoints: List[QualityCheckpoint] = Field(default_factory=list)
    final_quality: Optional[FinalQuality] = None


class StageOutput(BaseModel):
    produced_quantity: Decimal = Field(ZERO, ge=0)
    unit: Optional[str] = None
    warehouse_id: Optional[str] = None
    location: Optional[str] = None
    batch_number: Optional[str] = None


class StageCosts(BaseModel):
    """Cost leaves summed by the order cost summary. overhead_cost is entered, the rest derived."""
    material_cost: Decimal = Field(ZERO, ge=0)
    labor_cost: Decimal = Field(ZERO, ge=0)
    machine_cost: Decimal = Field(ZERO, ge=0)
    overhead_cost: Decimal = Field(ZERO, ge=0)
    job_work_cost: Decimal = Field(ZERO, ge=0)
    total_stage_cost: Decimal = Field(ZERO, ge=0)


class ProductionStage(BaseModel):
    """One ordered step of a production order"""
    stage_number: int = Field(..., ge=1)
    stage_name: str
    process_type: ProcessType
    status: StageStatus = StageStatus.PENDING
    attempts: int = Field(0, ge=0)
    # Output of earlier rejected attempts, counted as rejected after a re-attempt
    scrapped_quantity: Decimal = Field(ZERO, ge=0)

    assignment: StageAssignment = Field(default_factory=StageAssignment)
    timing: StageTiming = Field(default_factory=StageTiming)
    material_consumption: List[MaterialConsumption] = Field(default_factory=list)
    quality_control: QualityControl = Field(default_factory=QualityControl)
    output: StageOutput = Field(default_factory=StageOutput)
    costs: StageCosts = Field(default_factory=StageCosts)

    notes: Optional[str] = None
    instructions: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES

    @property
    def good_quantity(self) -> Decimal:
        """Output that passed this stage"""
        final = self.quality_control.final_quality
        if final is None:
            return self.output.produced_quantity
        return final.approved_quantity


# ============================================================================
# Order-level records
# ============================================================================

class Schedule(BaseModel):
    planned_start_date: Optional[datetime] = None
    planned_end_date: Optional[datetime] = None
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None
    estimated_duration: Optional[Decimal] = Field(None, ge=0)  # days
    actual_duration: Optional[Decimal] = Field(None, ge=0)  # days
    delay_reason: Optional[str] = None


class CostSummary(BaseModel):
    material_cost: Decimal = ZERO
    labor_cost: Decimal = ZERO
    machine_cost: Decimal = ZERO
    overhead_cost: Decimal = ZERO
    job_work_cost: Decimal = ZERO
    total_production_cost: Decimal = ZERO
    cost_per_unit: Decimal = ZERO


class QualitySummary(BaseModel):
    total_produced: Decimal = ZERO
    total_approved: Decimal = ZERO
    total_rejected: Decimal = ZERO
    total_rework: Decimal = ZERO
    overall_quality_grade: Optional[QualityGrade] = None
    defect_rate: Decimal = ZERO
    first_pass_yield: Decimal = ZERO


class Approval(BaseModel):
    approver_id: str
    approver_name: Optional[str] = None
    status: str = "approved"
    approved_at: datetime
    remarks: Optional[str] = None


class SourceOrderRef(BaseModel):
    """Snapshot of the customer order this production order fulfils"""
    customer_order_id: str
    customer_order_number: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    due_date: Optional[datetime] = None


# ============================================================================
# Aggregate root
# ============================================================================

class ProductionOrder(BaseModel):
    """
    Production Order aggregate root.

    Lifecycle: draft → approved → in_progress → completed | partially_completed
    Operator actions: on_hold (resumable), cancelled (terminal)

    Quantities, cost_summary, quality_summary and every status other than
    draft/approved/on_hold/cancelled are recomputed from stage data by
    services.rollup on every save.
    """
    id: Optional[int] = None
    version: int = 0
    company_id: str
    production_order_number: Optional[str] = None
    order_date: datetime = Field(default_factory=utcnow)

    source_order: Optional[SourceOrderRef] = None
    product: ProductSpec

    order_quantity: Decimal = Field(..., gt=0)
    unit: str = "m"
    completed_quantity: Decimal = ZERO
    rejected_quantity: Decimal = ZERO
    pending_quantity: Decimal = ZERO

    raw_materials: List[RawMaterialLine] = Field(default_factory=list)
    production_stages: List[ProductionStage] = Field(default_factory=list)

    priority: Priority = Priority.MEDIUM
    status: ProductionOrderStatus = ProductionOrderStatus.DRAFT
    status_before_hold: Optional[ProductionOrderStatus] = None
    hold_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None

    schedule: Schedule = Field(default_factory=Schedule)
    cost_summary: CostSummary = Field(default_factory=CostSummary)
    quality_summary: QualitySummary = Field(default_factory=QualitySummary)
    approvals: List[Approval] = Field(default_factory=list)

    special_instructions: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("production_stages")
    @classmethod
    def stage_numbers_unique(cls, stages: List[ProductionStage]) -> List[ProductionStage]:
        numbers = [s.stage_number for s in stages]
        if len(numbers) != len(set(numbers)):
            raise ValueError("stage_number must be unique within a production order")
        return sorted(stages, key=lambda s: s.stage_number)

    def __repr__(self):
        return f"<ProductionOrder {self.production_order_number}: {self.order_quantity} {self.unit} ({self.status.value})>"

    def get_stage(self, stage_number: int) -> Optional[ProductionStage]:
        for stage in self.production_stages:
            if stage.stage_number == stage_number:
                return stage
        return None

    def get_raw_material(self, item_id: str) -> Optional[RawMaterialLine]:
        for line in self.raw_materials:
            if line.item_id == item_id:
                return line
        return None

    @property
    def current_stage(self) -> Optional[ProductionStage]:
        """First stage being worked on"""
        return next((s for s in self.production_stages if s.status == StageStatus.IN_PROGRESS), None)

    @property
    def next_stage(self) -> Optional[ProductionStage]:
        """First stage not yet started"""
        return next((s for s in self.production_stages if s.status == StageStatus.PENDING), None)

    @property
    def completion_percentage(self) -> Decimal:
        if not self.order_quantity:
            return ZERO
        return display_round(self.completed_quantity / self.order_quantity * HUNDRED)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def is_delayed(self, now: Optional[datetime] = None) -> bool:
        """True if the planned end date has passed and the order is not finished"""
        planned_end = as_utc(self.schedule.planned_end_date)
        if planned_end is None:
            return False
        if self.status in (ProductionOrderStatus.COMPLETED, ProductionOrderStatus.CANCELLED):
            return False
        return (now or utcnow()) > planned_end
