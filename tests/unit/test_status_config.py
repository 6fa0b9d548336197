"""
Tests for status transition tables
"""
import pytest

from factoryops.core.status_config import (
    ProductionOrderStatus,
    StageAction,
    StageStatus,
    get_allowed_stage_transitions,
    is_valid_production_order_transition,
    is_valid_stage_transition,
    validate_production_order_transition,
    validate_stage_transition,
)
from factoryops.exceptions import InvalidTransitionError

pytestmark = pytest.mark.unit


class TestStageTransitions:

    @pytest.mark.parametrize("current,new", [
        ("pending", "in_progress"),
        ("in_progress", "completed"),
        ("in_progress", "rejected"),
        ("in_progress", "rework"),
        ("in_progress", "on_hold"),
        ("on_hold", "in_progress"),
        ("rework", "in_progress"),
        ("rejected", "in_progress"),
    ])
    def test_allowed(self, current, new):
        assert is_valid_stage_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("pending", "completed"),
        ("pending", "on_hold"),
        ("on_hold", "completed"),
        ("completed", "in_progress"),
        ("rework", "completed"),
    ])
    def test_not_allowed(self, current, new):
        assert not is_valid_stage_transition(current, new)

    def test_completed_is_terminal(self):
        assert get_allowed_stage_transitions(StageStatus.COMPLETED) == []

    def test_validate_reports_allowed_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_stage_transition(2, StageStatus.PENDING, StageStatus.COMPLETED)

        assert exc_info.value.details["allowed_states"] == ["in_progress"]
        assert "stage 2" in exc_info.value.message


class TestOrderTransitions:

    def test_cancel_allowed_from_non_terminal(self):
        for status in ("draft", "approved", "in_progress", "on_hold"):
            assert is_valid_production_order_transition(status, "cancelled")

    @pytest.mark.parametrize("status", ["completed", "partially_completed", "cancelled"])
    def test_terminal_orders_accept_nothing(self, status):
        with pytest.raises(InvalidTransitionError):
            validate_production_order_transition(ProductionOrderStatus(status), ProductionOrderStatus.APPROVED)


class TestStageAction:

    def test_camel_case_spelling(self):
        assert StageAction("recordConsumption") == StageAction.RECORD_CONSUMPTION
        assert StageAction("recordCheckpoint") == StageAction.RECORD_CHECKPOINT

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            StageAction("teleport")
