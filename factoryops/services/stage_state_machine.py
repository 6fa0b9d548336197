"""
Stage state machine for production stages.

Pure logic, no I/O: every function validates the requested transition
against the stage (and, for start, its preceding stages) and mutates the
stage it is given. Callers pass a copy of the aggregate so a rejected
transition leaves the loaded order untouched.

    pending → in_progress → completed | rejected | rework
    in_progress ↔ on_hold
    rework | rejected → in_progress (re-attempt)
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from factoryops.core.status_config import (
    StageStatus,
    validate_stage_transition,
)
from factoryops.exceptions import (
    InvalidTransitionError,
    PreconditionFailedError,
    ValidationError,
)
from factoryops.schemas.production_order import (
    ZERO,
    CheckpointResult,
    FinalQuality,
    MaterialConsumption,
    ProductionStage,
    QualityCheckpoint,
    QualityGrade,
    RawMaterialLine,
    StageCosts,
    as_utc,
)
from factoryops.schemas.stage_actions import (
    CompleteStagePayload,
    FinalQualityInput,
    HoldStagePayload,
    RecordCheckpointPayload,
    RecordConsumptionPayload,
    RejectStagePayload,
    ResumeStagePayload,
    ReworkStagePayload,
    StartStagePayload,
)

_SIXTY = Decimal("60")


def _elapsed_minutes(start: Optional[datetime], end: datetime) -> Decimal:
    if start is None:
        return ZERO
    seconds = Decimal(str((as_utc(end) - as_utc(start)).total_seconds()))
    return max(ZERO, seconds / _SIXTY)


def _touch(stage: ProductionStage, actor: Optional[str], now: datetime) -> None:
    stage.updated_by = actor
    stage.updated_at = now


def _require_in_progress(stage: ProductionStage, action: str) -> None:
    if stage.status != StageStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Cannot {action} stage {stage.stage_number} in status '{stage.status.value}'",
            current_state=stage.status.value,
            allowed_states=[StageStatus.IN_PROGRESS.value],
        )


# =============================================================================
# Costing
# =============================================================================

def calculate_stage_costs(stage: ProductionStage) -> StageCosts:
    """
    Derive stage costs from assignment and consumption records.

    Material cost charges consumed quantity at the rate captured on each
    consumption entry; waste is not charged separately. overhead_cost is
    carried over as entered.
    """
    material_cost = sum((c.consumed_quantity * c.rate for c in stage.material_consumption), ZERO)
    labor_cost = sum((w.hours_worked * w.hourly_rate for w in stage.assignment.workers), ZERO)
    machine_cost = sum((m.hours_used * m.hourly_rate for m in stage.assignment.machines), ZERO)
    job_work = stage.assignment.job_work
    job_work_cost = job_work.job_worker_rate * stage.output.produced_quantity if job_work else ZERO
    overhead_cost = stage.costs.overhead_cost

    return StageCosts(
        material_cost=material_cost,
        labor_cost=labor_cost,
        machine_cost=machine_cost,
        overhead_cost=overhead_cost,
        job_work_cost=job_work_cost,
        total_stage_cost=material_cost + labor_cost + machine_cost + overhead_cost + job_work_cost,
    )


def refresh_stage_costs(stage: ProductionStage) -> None:
    """Recompute per-assignment line costs and the stage cost leaves in place."""
    for worker in stage.assignment.workers:
        worker.total_cost = worker.hours_worked * worker.hourly_rate
    for machine in stage.assignment.machines:
        machine.total_cost = machine.hours_used * machine.hourly_rate
    stage.costs = calculate_stage_costs(stage)
    if stage.assignment.job_work:
        stage.assignment.job_work.job_work_cost = stage.costs.job_work_cost


# =============================================================================
# Transitions
# =============================================================================

def start_stage(
    stage: ProductionStage,
    previous_stages: Sequence[ProductionStage],
    payload: StartStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """
    Start a pending stage or re-attempt a rework/rejected one.

    Validations:
    - Every lower-numbered stage must be completed
    - At least one worker, machine or job-work assignment must exist after
      merging the payload's assignments
    - A re-attempt must stay within payload.max_attempts, when given
    """
    validate_stage_transition(stage.stage_number, stage.status, StageStatus.IN_PROGRESS)

    blocking = [s for s in previous_stages if s.status != StageStatus.COMPLETED]
    if blocking:
        first = min(blocking, key=lambda s: s.stage_number)
        raise InvalidTransitionError(
            f"Previous stage (stage {first.stage_number}, '{first.stage_name}') must be completed "
            f"before starting stage {stage.stage_number}",
            current_state=stage.status.value,
        )

    is_reattempt = stage.status in (StageStatus.REWORK, StageStatus.REJECTED)
    if is_reattempt and payload.max_attempts is not None and stage.attempts >= payload.max_attempts:
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} already used {stage.attempts} of {payload.max_attempts} attempts",
            precondition="max_attempts",
            current_state=stage.status.value,
        )

    assignment = stage.assignment.model_copy(deep=True)
    for worker in payload.workers:
        assignment.workers.append(worker.model_copy(update={"assigned_at": worker.assigned_at or now}))
    for machine in payload.machines:
        assignment.machines.append(machine.model_copy(update={"assigned_at": machine.assigned_at or now}))
    if payload.job_work is not None:
        assignment.job_work = payload.job_work
    if not assignment.has_resources:
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} needs a worker, machine or job-work assignment before it can start",
            precondition="resource_assignment",
            current_state=stage.status.value,
        )

    if stage.status == StageStatus.REJECTED:
        # The rejected attempt's output is scrapped; its consumption stays on record
        stage.scrapped_quantity += stage.output.produced_quantity
        stage.quality_control.final_quality = None
        stage.output.produced_quantity = ZERO

    stage.assignment = assignment
    stage.status = StageStatus.IN_PROGRESS
    stage.attempts += 1
    if stage.timing.actual_start_time is None:
        stage.timing.actual_start_time = now
    stage.timing.actual_end_time = None
    if payload.notes:
        stage.notes = payload.notes
    refresh_stage_costs(stage)
    _touch(stage, actor, now)
    return stage


def hold_stage(
    stage: ProductionStage,
    payload: HoldStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """Pause a running stage. Consumption and assignment costs are kept."""
    validate_stage_transition(stage.stage_number, stage.status, StageStatus.ON_HOLD)
    stage.status = StageStatus.ON_HOLD
    stage.timing.held_since = now
    if payload.reason:
        stage.notes = f"ON HOLD: {payload.reason}"
    _touch(stage, actor, now)
    return stage


def resume_stage(
    stage: ProductionStage,
    payload: ResumeStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """Resume a held stage; the held interval is added to break time."""
    if stage.status != StageStatus.ON_HOLD:
        raise InvalidTransitionError(
            f"Cannot resume stage {stage.stage_number} in status '{stage.status.value}'",
            current_state=stage.status.value,
            allowed_states=[StageStatus.ON_HOLD.value],
        )
    stage.timing.break_time += _elapsed_minutes(stage.timing.held_since, now)
    stage.timing.held_since = None
    stage.status = StageStatus.IN_PROGRESS
    if payload.notes:
        stage.notes = payload.notes
    _touch(stage, actor, now)
    return stage


def record_consumption(
    stage: ProductionStage,
    material: RawMaterialLine,
    payload: RecordConsumptionPayload,
    actor: Optional[str],
    now: datetime,
) -> MaterialConsumption:
    """Append a consumption fact for a raw material of the order."""
    _require_in_progress(stage, "record consumption on")
    if material.item_id != payload.item_id:
        raise ValidationError(
            f"Consumption item {payload.item_id} does not match raw material {material.item_id}",
            field="item_id",
            value=payload.item_id,
        )

    entry = MaterialConsumption(
        item_id=material.item_id,
        item_name=material.item_name,
        consumed_quantity=payload.consumed_quantity,
        waste_quantity=payload.waste_quantity,
        unit=material.unit,
        rate=material.rate,
        batch_number=payload.batch_number,
        consumed_by=actor,
        consumed_at=now,
    )
    stage.material_consumption.append(entry)
    refresh_stage_costs(stage)
    _touch(stage, actor, now)
    return entry


def record_checkpoint(
    stage: ProductionStage,
    payload: RecordCheckpointPayload,
    actor: Optional[str],
    now: datetime,
) -> QualityCheckpoint:
    """Append a quality checkpoint result."""
    _require_in_progress(stage, "record a checkpoint on")
    checkpoint = QualityCheckpoint(
        checkpoint_name=payload.checkpoint_name,
        parameter=payload.parameter,
        expected_value=payload.expected_value,
        actual_value=payload.actual_value,
        status=payload.status,
        checked_by=actor,
        checked_at=now,
        remarks=payload.remarks,
    )
    stage.quality_control.checkpoints.append(checkpoint)
    _touch(stage, actor, now)
    return checkpoint


def _merge_final_quality(
    stage: ProductionStage,
    quality: Optional[FinalQualityInput],
    actor: Optional[str],
    now: datetime,
) -> Optional[FinalQuality]:
    """Apply a final quality record; rework quantity from earlier cycles is kept."""
    existing = stage.quality_control.final_quality
    produced = stage.output.produced_quantity
    if quality is None:
        if existing is None:
            return None
        # Record left by rework: everything produced and not rejected passes
        return existing.model_copy(update={
            "approved_quantity": max(ZERO, produced - existing.rejected_quantity),
        })

    if quality.approved_quantity is not None:
        approved = quality.approved_quantity
    else:
        approved = max(ZERO, produced - quality.rejected_quantity)
    if approved + quality.rejected_quantity > produced:
        raise ValidationError(
            f"Approved ({approved}) plus rejected ({quality.rejected_quantity}) exceeds "
            f"produced quantity {produced} on stage {stage.stage_number}",
            field="final_quality",
        )

    return FinalQuality(
        checked_by=actor,
        checked_at=now,
        quality_grade=quality.quality_grade,
        defects=quality.defects,
        defect_percentage=quality.defect_percentage,
        approved_quantity=approved,
        rejected_quantity=quality.rejected_quantity,
        rework_quantity=existing.rework_quantity if existing else ZERO,
        quality_notes=quality.quality_notes,
    )


def _finish_timing(stage: ProductionStage, now: datetime) -> None:
    stage.timing.actual_end_time = now
    stage.timing.actual_duration = max(
        ZERO, _elapsed_minutes(stage.timing.actual_start_time, now) - stage.timing.break_time
    )


def complete_stage(
    stage: ProductionStage,
    payload: CompleteStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """
    Complete a running stage.

    Validations:
    - produced quantity must be greater than 0
    - the latest failed checkpoint must be followed by a pass or a rework
    - when quality control is required, a final grade must be given
    - a final grade of Reject must go through reject_stage instead
    """
    validate_stage_transition(stage.stage_number, stage.status, StageStatus.COMPLETED)
    if _has_unresolved_failure(stage):
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} has a failed quality checkpoint; "
            f"record a passing checkpoint, rework or reject the stage",
            precondition="quality_checkpoint",
            current_state=stage.status.value,
        )

    if payload.produced_quantity is not None:
        stage.output.produced_quantity = payload.produced_quantity
    if stage.output.produced_quantity <= 0:
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} cannot complete without produced quantity",
            precondition="produced_quantity",
            current_state=stage.status.value,
        )

    final_quality = _merge_final_quality(stage, payload.final_quality, actor, now)
    grade = final_quality.quality_grade if final_quality else None
    if grade == QualityGrade.REJECT:
        raise InvalidTransitionError(
            f"Stage {stage.stage_number} was graded Reject; use reject instead of complete",
            current_state=stage.status.value,
        )
    if stage.quality_control.is_required and grade is None:
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} requires a final quality grade before completion",
            precondition="final_quality",
            current_state=stage.status.value,
        )

    stage.quality_control.final_quality = final_quality
    for field in ("unit", "warehouse_id", "location", "batch_number"):
        value = getattr(payload, field)
        if value is not None:
            setattr(stage.output, field, value)
    for worker in stage.assignment.workers:
        if worker.worker_id in payload.worker_hours:
            worker.hours_worked = payload.worker_hours[worker.worker_id]
    for machine in stage.assignment.machines:
        if machine.machine_id in payload.machine_hours:
            machine.hours_used = payload.machine_hours[machine.machine_id]
    if payload.overtime_hours is not None:
        stage.timing.overtime_hours = payload.overtime_hours
    if payload.overhead_cost is not None:
        stage.costs.overhead_cost = payload.overhead_cost
    if payload.notes:
        stage.notes = payload.notes

    stage.status = StageStatus.COMPLETED
    _finish_timing(stage, now)
    refresh_stage_costs(stage)
    _touch(stage, actor, now)
    return stage


def _has_unresolved_failure(stage: ProductionStage) -> bool:
    """True if the latest failed checkpoint has no pass or rework checkpoint after it"""
    checkpoints = stage.quality_control.checkpoints
    failed = [i for i, c in enumerate(checkpoints) if c.status == CheckpointResult.FAIL]
    if not failed:
        return False
    return not any(
        c.status in (CheckpointResult.PASS, CheckpointResult.REWORK)
        for c in checkpoints[failed[-1] + 1:]
    )


def reject_stage(
    stage: ProductionStage,
    payload: RejectStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """
    Reject a running stage.

    Requires a final grade of Reject, or a failed checkpoint with no rework
    path. Consumed material is not returned; it stays as scrap cost.
    """
    validate_stage_transition(stage.stage_number, stage.status, StageStatus.REJECTED)

    if payload.produced_quantity is not None:
        stage.output.produced_quantity = payload.produced_quantity
    produced = stage.output.produced_quantity

    quality = payload.final_quality
    graded_reject = quality is not None and quality.quality_grade == QualityGrade.REJECT
    if quality is not None and quality.quality_grade not in (None, QualityGrade.REJECT):
        raise InvalidTransitionError(
            f"Stage {stage.stage_number} graded {quality.quality_grade.value} cannot be rejected",
            current_state=stage.status.value,
        )
    if not graded_reject and not _has_unresolved_failure(stage):
        raise PreconditionFailedError(
            f"Stage {stage.stage_number} can only be rejected with a Reject grade "
            f"or a failed quality checkpoint",
            precondition="quality_failure",
            current_state=stage.status.value,
        )

    existing = stage.quality_control.final_quality
    stage.quality_control.final_quality = FinalQuality(
        checked_by=actor,
        checked_at=now,
        quality_grade=QualityGrade.REJECT,
        defects=quality.defects if quality else [],
        defect_percentage=quality.defect_percentage if quality else None,
        approved_quantity=ZERO,
        rejected_quantity=produced,
        rework_quantity=existing.rework_quantity if existing else ZERO,
        quality_notes=quality.quality_notes if quality else None,
    )
    if payload.overhead_cost is not None:
        stage.costs.overhead_cost = payload.overhead_cost
    if payload.notes:
        stage.notes = payload.notes

    stage.status = StageStatus.REJECTED
    _finish_timing(stage, now)
    refresh_stage_costs(stage)
    _touch(stage, actor, now)
    return stage


def rework_stage(
    stage: ProductionStage,
    payload: ReworkStagePayload,
    actor: Optional[str],
    now: datetime,
) -> ProductionStage:
    """
    Send part of a running stage's output back for rework.

    The rework quantity accumulates on the final quality record (it lowers
    first-pass yield) and the total over all cycles may not exceed the
    produced quantity. A rework checkpoint is logged, which resolves any
    earlier failed checkpoint. Consumption stays as recorded; starting the
    stage again continues the same stage instance.
    """
    validate_stage_transition(stage.stage_number, stage.status, StageStatus.REWORK)

    if payload.produced_quantity is not None:
        stage.output.produced_quantity = payload.produced_quantity
    final = stage.quality_control.final_quality or FinalQuality()
    total_rework = final.rework_quantity + payload.rework_quantity
    if total_rework > stage.output.produced_quantity:
        raise ValidationError(
            f"Rework quantity {payload.rework_quantity} would bring total rework to {total_rework}, "
            f"above produced quantity {stage.output.produced_quantity} on stage {stage.stage_number}",
            field="rework_quantity",
            value=payload.rework_quantity,
        )

    stage.quality_control.final_quality = final.model_copy(update={
        "checked_by": actor,
        "checked_at": now,
        "rework_quantity": total_rework,
        "quality_notes": payload.quality_notes or final.quality_notes,
    })
    stage.quality_control.checkpoints.append(QualityCheckpoint(
        checkpoint_name="rework",
        parameter="rework_quantity",
        actual_value=str(payload.rework_quantity),
        status=CheckpointResult.REWORK,
        checked_by=actor,
        checked_at=now,
        remarks=payload.quality_notes,
    ))
    stage.status = StageStatus.REWORK
    refresh_stage_costs(stage)
    _touch(stage, actor, now)
    return stage
