"""
Rollup Calculator

Pure functions recomputing every derived field of a production order from
its stage data. No stored rollup value is read back as an input, except
cost_per_unit which keeps its previous value while nothing is completed.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from factoryops.core.status_config import ProductionOrderStatus, StageStatus
from factoryops.schemas.production_order import (
    HUNDRED,
    QUALITY_GRADE_ORDER,
    ZERO,
    CostSummary,
    ProductionOrder,
    QualityGrade,
    QualitySummary,
    as_utc,
)
from factoryops.services.stage_state_machine import refresh_stage_costs

_SECONDS_PER_DAY = Decimal("86400")

# Statuses rollup never changes: explicit operator states and frozen outcomes
_FIXED_STATUSES = {
    ProductionOrderStatus.DRAFT,
    ProductionOrderStatus.ON_HOLD,
    ProductionOrderStatus.CANCELLED,
    ProductionOrderStatus.COMPLETED,
    ProductionOrderStatus.PARTIALLY_COMPLETED,
}


def calculate_quantities(order: ProductionOrder) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Returns (completed, rejected, pending) for the order.

    Completed output is the good quantity of the last stage once it is
    completed. Rejected output counts whole rejected stages plus the
    rejected part of completed stages, plus the output scrapped by earlier
    rejected attempts of stages that were re-attempted.
    """
    completed = ZERO
    if order.production_stages:
        last = order.production_stages[-1]
        if last.status == StageStatus.COMPLETED:
            completed = last.good_quantity

    rejected = ZERO
    for stage in order.production_stages:
        rejected += stage.scrapped_quantity
        if stage.status == StageStatus.REJECTED:
            rejected += stage.output.produced_quantity
        elif stage.status == StageStatus.COMPLETED and stage.quality_control.final_quality:
            rejected += stage.quality_control.final_quality.rejected_quantity

    pending = max(ZERO, order.order_quantity - completed - rejected)
    return completed, rejected, pending


def calculate_cost_summary(order: ProductionOrder, completed_quantity: Decimal) -> CostSummary:
    summary = CostSummary(
        material_cost=sum((s.costs.material_cost for s in order.production_stages), ZERO),
        labor_cost=sum((s.costs.labor_cost for s in order.production_stages), ZERO),
        machine_cost=sum((s.costs.machine_cost for s in order.production_stages), ZERO),
        overhead_cost=sum((s.costs.overhead_cost for s in order.production_stages), ZERO),
        job_work_cost=sum((s.costs.job_work_cost for s in order.production_stages), ZERO),
        cost_per_unit=order.cost_summary.cost_per_unit,
    )
    summary.total_production_cost = (
        summary.material_cost
        + summary.labor_cost
        + summary.machine_cost
        + summary.overhead_cost
        + summary.job_work_cost
    )
    if completed_quantity > 0:
        summary.cost_per_unit = summary.total_production_cost / completed_quantity
    return summary


def _worst_grade(grades) -> Optional[QualityGrade]:
    ranked = [QUALITY_GRADE_ORDER.index(g) for g in grades if g is not None]
    return QUALITY_GRADE_ORDER[max(ranked)] if ranked else None


def calculate_quality_summary(order: ProductionOrder) -> QualitySummary:
    """Sum quality figures over stages that carry a final quality record, plus scrapped attempts."""
    summary = QualitySummary()
    grades = []
    for stage in order.production_stages:
        summary.total_produced += stage.scrapped_quantity
        summary.total_rejected += stage.scrapped_quantity
        final = stage.quality_control.final_quality
        if final is None:
            continue
        summary.total_produced += stage.output.produced_quantity
        summary.total_approved += final.approved_quantity
        summary.total_rejected += final.rejected_quantity
        summary.total_rework += final.rework_quantity
        grades.append(final.quality_grade)

    if summary.total_produced > 0:
        summary.defect_rate = summary.total_rejected / summary.total_produced * HUNDRED
        summary.first_pass_yield = (
            (summary.total_produced - summary.total_rework) / summary.total_produced * HUNDRED
        )
    summary.overall_quality_grade = _worst_grade(grades)
    return summary


def recalculate_raw_materials(order: ProductionOrder) -> None:
    """Refresh each raw material line's consumed, waste and cost from stage consumption."""
    totals: Dict[str, Tuple[Decimal, Decimal]] = {}
    for stage in order.production_stages:
        for entry in stage.material_consumption:
            consumed, waste = totals.get(entry.item_id, (ZERO, ZERO))
            totals[entry.item_id] = (consumed + entry.consumed_quantity, waste + entry.waste_quantity)

    for line in order.raw_materials:
        consumed, waste = totals.get(line.item_id, (ZERO, ZERO))
        line.consumed_quantity = consumed
        line.waste_quantity = waste
        line.total_cost = consumed * line.rate


def derive_order_status(order: ProductionOrder, pending_quantity: Decimal) -> ProductionOrderStatus:
    """
    Order status implied by stage state.

    draft, on_hold and cancelled change only through operator actions;
    completed and partially_completed orders are frozen.
    """
    if order.status in _FIXED_STATUSES:
        return order.status
    stages = order.production_stages
    if stages and all(s.is_terminal for s in stages):
        if pending_quantity == 0:
            return ProductionOrderStatus.COMPLETED
        return ProductionOrderStatus.PARTIALLY_COMPLETED
    if any(s.status != StageStatus.PENDING for s in stages):
        return ProductionOrderStatus.IN_PROGRESS
    return ProductionOrderStatus.APPROVED


def _update_schedule(order: ProductionOrder, now: datetime) -> None:
    schedule = order.schedule
    if schedule.actual_start_date is None and any(
        s.status != StageStatus.PENDING for s in order.production_stages
    ):
        starts = [s.timing.actual_start_time for s in order.production_stages if s.timing.actual_start_time]
        schedule.actual_start_date = min(as_utc(t) for t in starts) if starts else now
    if order.status in (ProductionOrderStatus.COMPLETED, ProductionOrderStatus.PARTIALLY_COMPLETED):
        if schedule.actual_end_date is None:
            schedule.actual_end_date = now
        if schedule.actual_start_date is not None and schedule.actual_duration is None:
            elapsed = as_utc(schedule.actual_end_date) - as_utc(schedule.actual_start_date)
            schedule.actual_duration = Decimal(str(elapsed.total_seconds())) / _SECONDS_PER_DAY


def apply_rollups(order: ProductionOrder, now: datetime) -> ProductionOrder:
    """
    Recompute stage costs, raw material totals, order quantities, cost and
    quality summaries, status and schedule actuals. Mutates and returns the
    order it is given.
    """
    for stage in order.production_stages:
        refresh_stage_costs(stage)
    recalculate_raw_materials(order)

    completed, rejected, pending = calculate_quantities(order)
    order.completed_quantity = completed
    order.rejected_quantity = rejected
    order.pending_quantity = pending

    order.cost_summary = calculate_cost_summary(order, completed)
    order.quality_summary = calculate_quality_summary(order)
    order.status = derive_order_status(order, pending)
    _update_schedule(order, now)
    order.updated_at = now
    return order
