"""
Request payloads for creating production orders and driving stage transitions
"""
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional, Type
from datetime import datetime
from decimal import Decimal

from factoryops.core.status_config import StageAction
from factoryops.schemas.production_order import (
    CheckpointResult,
    JobWork,
    MachineAssignment,
    Priority,
    ProcessType,
    ProductSpec,
    QualityGrade,
    Schedule,
    SourceOrderRef,
    WorkerAssignment,
)


# ============================================================================
# Order creation
# ============================================================================

class StagePlanEntry(BaseModel):
    """One planned stage; stage numbers follow list order starting at 1"""
    stage_name: str = Field(..., min_length=1, max_length=200)
    process_type: ProcessType
    quality_required: Optional[bool] = None  # None = decide by process type
    planned_start_time: Optional[datetime] = None
    planned_end_time: Optional[datetime] = None
    planned_duration: Optional[Decimal] = Field(None, ge=0)
    instructions: Optional[str] = None


class RawMaterialRequest(BaseModel):
    item_id: str = Field(..., min_length=1)
    item_code: Optional[str] = None
    item_name: Optional[str] = None
    batch_id: Optional[str] = None
    unit: Optional[str] = None
    required_quantity: Decimal = Field(..., gt=0)
    rate: Decimal = Field(Decimal("0"), ge=0)


class ProductionOrderCreate(BaseModel):
    """Everything needed to open a production order in draft"""
    product: ProductSpec
    order_quantity: Decimal = Field(..., gt=0)
    unit: str = "m"
    stage_plan: List[StagePlanEntry] = Field(..., min_length=1)
    raw_materials: List[RawMaterialRequest] = Field(default_factory=list)
    source_order: Optional[SourceOrderRef] = None
    priority: Optional[Priority] = None
    schedule: Schedule = Field(default_factory=Schedule)
    special_instructions: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_schedule_and_materials(self):
        start = self.schedule.planned_start_date
        end = self.schedule.planned_end_date
        if start and end and end <= start:
            raise ValueError("Planned end date must be after start date")
        item_ids = [m.item_id for m in self.raw_materials]
        if len(item_ids) != len(set(item_ids)):
            raise ValueError("Each raw material item may appear only once")
        return self


# ============================================================================
# Stage action payloads
# ============================================================================

class ActionPayload(BaseModel):
    """Base for stage action payloads; keys may be snake_case or camelCase"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartStagePayload(ActionPayload):
    """Assign resources and start (or re-attempt) a stage"""
    workers: List[WorkerAssignment] = Field(default_factory=list)
    machines: List[MachineAssignment] = Field(default_factory=list)
    job_work: Optional[JobWork] = None
    max_attempts: Optional[int] = Field(None, ge=1)  # caller retry policy
    notes: Optional[str] = None


class HoldStagePayload(ActionPayload):
    reason: Optional[str] = None


class ResumeStagePayload(ActionPayload):
    notes: Optional[str] = None


class RecordConsumptionPayload(ActionPayload):
    item_id: str = Field(..., min_length=1)
    consumed_quantity: Decimal = Field(..., ge=0)
    waste_quantity: Decimal = Field(Decimal("0"), ge=0)
    batch_number: Optional[str] = None

    @model_validator(mode="after")
    def check_something_consumed(self):
        if self.consumed_quantity + self.waste_quantity <= 0:
            raise ValueError("Consumed or waste quantity must be greater than 0")
        return self


class RecordCheckpointPayload(ActionPayload):
    checkpoint_name: Optional[str] = None
    parameter: str = Field(..., min_length=1)
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None
    status: CheckpointResult
    remarks: Optional[str] = None


class FinalQualityInput(ActionPayload):
    quality_grade: Optional[QualityGrade] = None
    defects: List[str] = Field(default_factory=list)
    defect_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    approved_quantity: Optional[Decimal] = Field(None, ge=0)
    rejected_quantity: Decimal = Field(Decimal("0"), ge=0)
    quality_notes: Optional[str] = None


class CompleteStagePayload(ActionPayload):
    produced_quantity: Optional[Decimal] = Field(None, ge=0)  # None = keep recorded output
    unit: Optional[str] = None
    warehouse_id: Optional[str] = None
    location: Optional[str] = None
    batch_number: Optional[str] = None
    final_quality: Optional[FinalQualityInput] = None
    overhead_cost: Optional[Decimal] = Field(None, ge=0)
    worker_hours: Dict[str, Decimal] = Field(default_factory=dict)  # worker_id -> hours worked
    machine_hours: Dict[str, Decimal] = Field(default_factory=dict)  # machine_id -> hours used
    overtime_hours: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class RejectStagePayload(ActionPayload):
    produced_quantity: Optional[Decimal] = Field(None, ge=0)
    final_quality: Optional[FinalQualityInput] = None
    overhead_cost: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class ReworkStagePayload(ActionPayload):
    rework_quantity: Decimal = Field(..., gt=0)
    produced_quantity: Optional[Decimal] = Field(None, ge=0)
    quality_notes: Optional[str] = None


ACTION_PAYLOADS: Dict[StageAction, Type[BaseModel]] = {
    StageAction.START: StartStagePayload,
    StageAction.HOLD: HoldStagePayload,
    StageAction.RESUME: ResumeStagePayload,
    StageAction.RECORD_CONSUMPTION: RecordConsumptionPayload,
    StageAction.RECORD_CHECKPOINT: RecordCheckpointPayload,
    StageAction.COMPLETE: CompleteStagePayload,
    StageAction.REJECT: RejectStagePayload,
    StageAction.REWORK: ReworkStagePayload,
}


def parse_action_payload(action: StageAction, payload: Any) -> BaseModel:
    """Validate a raw payload (dict, model or None) against the action's schema"""
    model = ACTION_PAYLOADS[action]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return model.model_validate(payload or {})
