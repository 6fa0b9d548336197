"""
Unit Tests for the stage state machine

Tests the pure transition functions:
1. Start preconditions (stage ordering, resources, re-attempts)
2. Hold / resume and break time
3. Completion, rejection and rework rules
4. Stage cost calculation
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from factoryops.core.status_config import StageStatus
from factoryops.exceptions import (
    InvalidTransitionError,
    PreconditionFailedError,
    ValidationError,
)
from factoryops.schemas.production_order import (
    CheckpointResult,
    JobWork,
    MachineAssignment,
    ProcessType,
    ProductionStage,
    QualityControl,
    QualityGrade,
    RawMaterialLine,
    StageAssignment,
    WorkerAssignment,
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
from factoryops.services import stage_state_machine as machine

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

pytestmark = pytest.mark.unit


def make_stage(number=1, status=StageStatus.PENDING, quality_required=False, **overrides):
    return ProductionStage(
        stage_number=number,
        stage_name=overrides.pop("stage_name", f"Stage {number}"),
        process_type=overrides.pop("process_type", ProcessType.PRINTING),
        status=status,
        quality_control=QualityControl(is_required=quality_required),
        **overrides
    )


def running_stage(**overrides):
    stage = make_stage(status=StageStatus.IN_PROGRESS, **overrides)
    stage.assignment = StageAssignment(workers=[WorkerAssignment(worker_id="W-1", hourly_rate=Decimal("8"))])
    stage.timing.actual_start_time = NOW
    stage.attempts = 1
    return stage


def yarn_line():
    return RawMaterialLine(
        item_id="YARN-01",
        item_name="Cotton yarn",
        unit="kg",
        required_quantity=Decimal("60"),
        allocated_quantity=Decimal("60"),
        rate=Decimal("12.50"),
        allocation_id="PO-20250310-0001:YARN-01:abc",
    )


def with_worker():
    return StartStagePayload(workers=[WorkerAssignment(worker_id="W-1", hourly_rate=Decimal("8"))])


class TestStartStage:

    def test_start_first_stage(self):
        stage = make_stage()

        machine.start_stage(stage, [], with_worker(), "u-1", NOW)

        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.timing.actual_start_time == NOW
        assert stage.attempts == 1
        assert stage.assignment.workers[0].assigned_at == NOW
        assert stage.updated_by == "u-1"

    def test_start_requires_previous_stages_completed(self):
        """Stage 2 cannot start while stage 1 is still pending."""
        first = make_stage(1)
        second = make_stage(2)

        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.start_stage(second, [first], with_worker(), "u-1", NOW)

        assert "stage 1" in exc_info.value.message.lower()
        assert second.status == StageStatus.PENDING

    def test_start_after_previous_completed(self):
        first = make_stage(1, status=StageStatus.COMPLETED)
        second = make_stage(2)

        machine.start_stage(second, [first], with_worker(), "u-1", NOW)

        assert second.status == StageStatus.IN_PROGRESS

    def test_start_blocked_by_rejected_previous_stage(self):
        first = make_stage(1, status=StageStatus.REJECTED)
        second = make_stage(2)

        with pytest.raises(InvalidTransitionError):
            machine.start_stage(second, [first], with_worker(), "u-1", NOW)

    def test_start_without_resources_fails(self):
        stage = make_stage()

        with pytest.raises(PreconditionFailedError) as exc_info:
            machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)

        assert exc_info.value.details["precondition"] == "resource_assignment"

    def test_job_work_counts_as_resource(self):
        stage = make_stage()
        payload = StartStagePayload(job_work=JobWork(job_worker_id="JW-7", job_worker_rate=Decimal("1.5")))

        machine.start_stage(stage, [], payload, "u-1", NOW)

        assert stage.assignment.job_work.job_worker_id == "JW-7"

    def test_cannot_start_running_stage(self):
        stage = running_stage()

        with pytest.raises(InvalidTransitionError):
            machine.start_stage(stage, [], with_worker(), "u-1", NOW)

    def test_cannot_restart_completed_stage(self):
        stage = make_stage(status=StageStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            machine.start_stage(stage, [], with_worker(), "u-1", NOW)

    def test_reattempt_rejected_stage_resets_output(self):
        """A rejected stage may be re-attempted; its consumption stays as scrap."""
        stage = running_stage()
        machine.record_consumption(stage, yarn_line(), RecordConsumptionPayload(
            item_id="YARN-01", consumed_quantity=Decimal("10")), "u-1", NOW)
        machine.reject_stage(stage, RejectStagePayload(
            produced_quantity=Decimal("40"),
            final_quality=FinalQualityInput(quality_grade=QualityGrade.REJECT),
        ), "u-1", NOW)

        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW + timedelta(hours=2))

        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.attempts == 2
        assert stage.output.produced_quantity == 0
        assert stage.scrapped_quantity == Decimal("40")
        assert stage.quality_control.final_quality is None
        assert len(stage.material_consumption) == 1
        # First start time is kept
        assert stage.timing.actual_start_time == NOW

    def test_reattempt_bounded_by_caller_policy(self):
        stage = make_stage(status=StageStatus.REWORK, attempts=3)
        stage.assignment = StageAssignment(workers=[WorkerAssignment(worker_id="W-1")])

        with pytest.raises(PreconditionFailedError):
            machine.start_stage(stage, [], StartStagePayload(max_attempts=3), "u-1", NOW)

        machine.start_stage(stage, [], StartStagePayload(max_attempts=4), "u-1", NOW)
        assert stage.attempts == 4


class TestHoldResume:

    def test_hold_and_resume_accumulates_break_time(self):
        stage = running_stage()

        machine.hold_stage(stage, HoldStagePayload(reason="power cut"), "u-1", NOW + timedelta(minutes=30))
        assert stage.status == StageStatus.ON_HOLD
        assert stage.notes == "ON HOLD: power cut"

        machine.resume_stage(stage, ResumeStagePayload(), "u-1", NOW + timedelta(minutes=75))
        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.timing.break_time == Decimal("45")
        assert stage.timing.held_since is None

    def test_hold_keeps_consumption(self):
        stage = running_stage()
        machine.record_consumption(stage, yarn_line(), RecordConsumptionPayload(
            item_id="YARN-01", consumed_quantity=Decimal("5")), "u-1", NOW)

        machine.hold_stage(stage, HoldStagePayload(), "u-1", NOW)

        assert len(stage.material_consumption) == 1
        assert stage.costs.material_cost == Decimal("62.50")

    def test_cannot_hold_pending_stage(self):
        with pytest.raises(InvalidTransitionError):
            machine.hold_stage(make_stage(), HoldStagePayload(), "u-1", NOW)

    def test_cannot_resume_running_stage(self):
        with pytest.raises(InvalidTransitionError):
            machine.resume_stage(running_stage(), ResumeStagePayload(), "u-1", NOW)


class TestRecordConsumption:

    def test_consumption_snapshots_rate_and_actor(self):
        stage = running_stage()

        entry = machine.record_consumption(stage, yarn_line(), RecordConsumptionPayload(
            item_id="YARN-01", consumed_quantity=Decimal("50"), waste_quantity=Decimal("2"),
            batch_number="LOT-7"), "u-1", NOW)

        assert entry.rate == Decimal("12.50")
        assert entry.consumed_by == "u-1"
        assert entry.consumed_at == NOW
        assert entry.waste_percentage == Decimal("3.85")
        assert stage.costs.material_cost == Decimal("625.00")

    def test_consumption_entries_are_immutable(self):
        stage = running_stage()
        entry = machine.record_consumption(stage, yarn_line(), RecordConsumptionPayload(
            item_id="YARN-01", consumed_quantity=Decimal("1")), "u-1", NOW)

        with pytest.raises(Exception):
            entry.consumed_quantity = Decimal("100")

    def test_consumption_requires_running_stage(self):
        with pytest.raises(InvalidTransitionError):
            machine.record_consumption(make_stage(), yarn_line(), RecordConsumptionPayload(
                item_id="YARN-01", consumed_quantity=Decimal("1")), "u-1", NOW)


class TestCompleteStage:

    def test_complete_sets_output_timing_and_costs(self):
        stage = running_stage()
        stage.timing.break_time = Decimal("15")

        machine.complete_stage(stage, CompleteStagePayload(
            produced_quantity=Decimal("98"),
            worker_hours={"W-1": Decimal("6")},
            overhead_cost=Decimal("20"),
        ), "u-1", NOW + timedelta(hours=6))

        assert stage.status == StageStatus.COMPLETED
        assert stage.output.produced_quantity == Decimal("98")
        assert stage.timing.actual_end_time == NOW + timedelta(hours=6)
        assert stage.timing.actual_duration == Decimal("345")
        assert stage.costs.labor_cost == Decimal("48")
        assert stage.assignment.workers[0].total_cost == Decimal("48")
        assert stage.costs.total_stage_cost == Decimal("68")

    def test_complete_without_output_fails(self):
        stage = running_stage()

        with pytest.raises(PreconditionFailedError) as exc_info:
            machine.complete_stage(stage, CompleteStagePayload(), "u-1", NOW)

        assert exc_info.value.details["precondition"] == "produced_quantity"

    def test_quality_required_needs_grade(self):
        stage = running_stage(quality_required=True)

        with pytest.raises(PreconditionFailedError):
            machine.complete_stage(stage, CompleteStagePayload(produced_quantity=Decimal("10")), "u-1", NOW)

        machine.complete_stage(stage, CompleteStagePayload(
            produced_quantity=Decimal("10"),
            final_quality=FinalQualityInput(quality_grade=QualityGrade.A),
        ), "u-1", NOW)
        assert stage.status == StageStatus.COMPLETED
        assert stage.quality_control.final_quality.approved_quantity == Decimal("10")

    def test_reject_grade_cannot_complete(self):
        stage = running_stage()

        with pytest.raises(InvalidTransitionError):
            machine.complete_stage(stage, CompleteStagePayload(
                produced_quantity=Decimal("10"),
                final_quality=FinalQualityInput(quality_grade=QualityGrade.REJECT),
            ), "u-1", NOW)

    def test_approved_plus_rejected_cannot_exceed_produced(self):
        stage = running_stage()

        with pytest.raises(ValidationError):
            machine.complete_stage(stage, CompleteStagePayload(
                produced_quantity=Decimal("10"),
                final_quality=FinalQualityInput(
                    quality_grade=QualityGrade.B,
                    approved_quantity=Decimal("8"),
                    rejected_quantity=Decimal("3"),
                ),
            ), "u-1", NOW)

    def test_partial_rejection_defaults_approved(self):
        stage = running_stage()

        machine.complete_stage(stage, CompleteStagePayload(
            produced_quantity=Decimal("100"),
            final_quality=FinalQualityInput(quality_grade=QualityGrade.B_PLUS, rejected_quantity=Decimal("4")),
        ), "u-1", NOW)

        assert stage.quality_control.final_quality.approved_quantity == Decimal("96")
        assert stage.good_quantity == Decimal("96")

    def test_explicit_zero_approved_is_kept(self):
        stage = running_stage()

        machine.complete_stage(stage, CompleteStagePayload(
            produced_quantity=Decimal("100"),
            final_quality=FinalQualityInput(quality_grade=QualityGrade.C, approved_quantity=Decimal("0")),
        ), "u-1", NOW)

        assert stage.quality_control.final_quality.approved_quantity == 0
        assert stage.good_quantity == 0

    def test_failed_checkpoint_blocks_completion(self):
        stage = running_stage()
        machine.record_checkpoint(stage, RecordCheckpointPayload(
            parameter="color fastness", status=CheckpointResult.FAIL), "u-1", NOW)

        with pytest.raises(PreconditionFailedError) as exc_info:
            machine.complete_stage(stage, CompleteStagePayload(produced_quantity=Decimal("10")), "u-1", NOW)

        assert exc_info.value.details["precondition"] == "quality_checkpoint"
        assert stage.status == StageStatus.IN_PROGRESS

    def test_passing_checkpoint_after_failure_allows_completion(self):
        stage = running_stage()
        for result in (CheckpointResult.FAIL, CheckpointResult.PASS):
            machine.record_checkpoint(stage, RecordCheckpointPayload(
                parameter="color fastness", status=result), "u-1", NOW)

        machine.complete_stage(stage, CompleteStagePayload(produced_quantity=Decimal("10")), "u-1", NOW)

        assert stage.status == StageStatus.COMPLETED


class TestRejectStage:

    def test_reject_with_reject_grade(self):
        stage = running_stage()

        machine.reject_stage(stage, RejectStagePayload(
            produced_quantity=Decimal("98"),
            final_quality=FinalQualityInput(quality_grade=QualityGrade.REJECT, defects=["bleeding"]),
        ), "u-1", NOW)

        assert stage.status == StageStatus.REJECTED
        final = stage.quality_control.final_quality
        assert final.quality_grade == QualityGrade.REJECT
        assert final.rejected_quantity == Decimal("98")
        assert final.defects == ["bleeding"]

    def test_reject_after_failed_checkpoint(self):
        stage = running_stage()
        stage.output.produced_quantity = Decimal("30")
        machine.record_checkpoint(stage, RecordCheckpointPayload(
            parameter="color fastness", expected_value="4", actual_value="2",
            status=CheckpointResult.FAIL), "u-1", NOW)

        machine.reject_stage(stage, RejectStagePayload(), "u-1", NOW)

        assert stage.status == StageStatus.REJECTED
        assert stage.quality_control.final_quality.rejected_quantity == Decimal("30")

    def test_reject_needs_quality_failure(self):
        stage = running_stage()

        with pytest.raises(PreconditionFailedError):
            machine.reject_stage(stage, RejectStagePayload(produced_quantity=Decimal("5")), "u-1", NOW)

    def test_failed_checkpoint_with_rework_path_cannot_reject(self):
        stage = running_stage()
        for result in (CheckpointResult.FAIL, CheckpointResult.REWORK):
            machine.record_checkpoint(stage, RecordCheckpointPayload(
                parameter="width", status=result), "u-1", NOW)

        with pytest.raises(PreconditionFailedError):
            machine.reject_stage(stage, RejectStagePayload(), "u-1", NOW)

    def test_reject_keeps_consumption(self):
        stage = running_stage()
        machine.record_consumption(stage, yarn_line(), RecordConsumptionPayload(
            item_id="YARN-01", consumed_quantity=Decimal("20")), "u-1", NOW)

        machine.reject_stage(stage, RejectStagePayload(
            final_quality=FinalQualityInput(quality_grade=QualityGrade.REJECT)), "u-1", NOW)

        assert stage.costs.material_cost == Decimal("250.00")


class TestReworkStage:

    def test_rework_then_resume_and_complete(self):
        stage = running_stage()

        machine.rework_stage(stage, ReworkStagePayload(
            rework_quantity=Decimal("10"), produced_quantity=Decimal("100")), "u-1", NOW)
        assert stage.status == StageStatus.REWORK
        assert stage.quality_control.final_quality.rework_quantity == Decimal("10")

        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)
        machine.rework_stage(stage, ReworkStagePayload(rework_quantity=Decimal("5")), "u-1", NOW)
        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)
        machine.complete_stage(stage, CompleteStagePayload(
            final_quality=FinalQualityInput(quality_grade=QualityGrade.A)), "u-1", NOW)

        final = stage.quality_control.final_quality
        assert stage.status == StageStatus.COMPLETED
        assert stage.attempts == 3
        assert final.rework_quantity == Decimal("15")
        assert final.approved_quantity == Decimal("100")

    def test_rework_cannot_exceed_output(self):
        stage = running_stage()
        stage.output.produced_quantity = Decimal("5")

        with pytest.raises(ValidationError):
            machine.rework_stage(stage, ReworkStagePayload(rework_quantity=Decimal("6")), "u-1", NOW)

    def test_total_rework_over_cycles_cannot_exceed_output(self):
        stage = running_stage()
        machine.rework_stage(stage, ReworkStagePayload(
            rework_quantity=Decimal("60"), produced_quantity=Decimal("100")), "u-1", NOW)
        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)

        with pytest.raises(ValidationError):
            machine.rework_stage(stage, ReworkStagePayload(rework_quantity=Decimal("60")), "u-1", NOW)

        machine.rework_stage(stage, ReworkStagePayload(rework_quantity=Decimal("40")), "u-1", NOW)
        assert stage.quality_control.final_quality.rework_quantity == Decimal("100")

    def test_rework_resolves_failed_checkpoint(self):
        stage = running_stage()
        machine.record_checkpoint(stage, RecordCheckpointPayload(
            parameter="print registration", status=CheckpointResult.FAIL), "u-1", NOW)

        machine.rework_stage(stage, ReworkStagePayload(
            rework_quantity=Decimal("10"), produced_quantity=Decimal("100")), "u-1", NOW)
        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)
        machine.complete_stage(stage, CompleteStagePayload(), "u-1", NOW)

        assert stage.quality_control.checkpoints[-1].status == CheckpointResult.REWORK
        assert stage.status == StageStatus.COMPLETED

    def test_complete_after_rework_without_grade_approves_output(self):
        stage = running_stage()
        machine.rework_stage(stage, ReworkStagePayload(
            rework_quantity=Decimal("20"), produced_quantity=Decimal("100")), "u-1", NOW)
        machine.start_stage(stage, [], StartStagePayload(), "u-1", NOW)

        machine.complete_stage(stage, CompleteStagePayload(), "u-1", NOW)

        final = stage.quality_control.final_quality
        assert final.approved_quantity == Decimal("100")
        assert final.rework_quantity == Decimal("20")
        assert stage.good_quantity == Decimal("100")


class TestStageCosts:

    def test_all_cost_categories(self):
        stage = make_stage(status=StageStatus.COMPLETED)
        stage.assignment = StageAssignment(
            workers=[WorkerAssignment(worker_id="W-1", hours_worked=Decimal("4"), hourly_rate=Decimal("10"))],
            machines=[MachineAssignment(machine_id="M-1", hours_used=Decimal("2"), hourly_rate=Decimal("30"))],
            job_work=JobWork(job_worker_id="JW-1", job_worker_rate=Decimal("0.5")),
        )
        stage.output.produced_quantity = Decimal("100")
        stage.costs.overhead_cost = Decimal("15")

        costs = machine.calculate_stage_costs(stage)

        assert costs.labor_cost == Decimal("40")
        assert costs.machine_cost == Decimal("60")
        assert costs.job_work_cost == Decimal("50.0")
        assert costs.overhead_cost == Decimal("15")
        assert costs.material_cost == 0
        assert costs.total_stage_cost == Decimal("165.0")
