"""Status Configuration and Transition Rules

This module defines valid status values and allowed transitions for
Production Orders and their Production Stages. Order-level statuses other
than approve/hold/cancel are derived from stage state; the table below also
lists those derived moves so every status change can be validated.
"""
from enum import Enum
from typing import Dict, List, Set

from factoryops.exceptions import InvalidTransitionError


# =============================================================================
# Production Order Status
# =============================================================================

class ProductionOrderStatus(str, Enum):
    """Valid status values for Production Orders"""
    DRAFT = "draft"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"
    PARTIALLY_COMPLETED = "partially_completed"


# Allowed transitions: current_status -> set of allowed next statuses
PRODUCTION_ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    ProductionOrderStatus.DRAFT: {
        ProductionOrderStatus.APPROVED,
        ProductionOrderStatus.ON_HOLD,
        ProductionOrderStatus.CANCELLED,
    },
    ProductionOrderStatus.APPROVED: {
        ProductionOrderStatus.IN_PROGRESS,
        ProductionOrderStatus.ON_HOLD,
        ProductionOrderStatus.CANCELLED,
    },
    ProductionOrderStatus.IN_PROGRESS: {
        ProductionOrderStatus.COMPLETED,
        ProductionOrderStatus.PARTIALLY_COMPLETED,
        ProductionOrderStatus.ON_HOLD,
        ProductionOrderStatus.CANCELLED,
    },
    ProductionOrderStatus.ON_HOLD: {
        ProductionOrderStatus.DRAFT,  # release_hold back to the derived status
        ProductionOrderStatus.APPROVED,
        ProductionOrderStatus.IN_PROGRESS,
        ProductionOrderStatus.CANCELLED,
    },
    ProductionOrderStatus.COMPLETED: set(),  # Terminal - order is frozen
    ProductionOrderStatus.PARTIALLY_COMPLETED: set(),  # Terminal - order is frozen
    ProductionOrderStatus.CANCELLED: set(),  # Terminal
}

TERMINAL_ORDER_STATUSES: Set[str] = {
    ProductionOrderStatus.COMPLETED,
    ProductionOrderStatus.PARTIALLY_COMPLETED,
    ProductionOrderStatus.CANCELLED,
}

# Orders in these statuses accept stage transitions
STAGE_WORK_ORDER_STATUSES: Set[str] = {
    ProductionOrderStatus.APPROVED,
    ProductionOrderStatus.IN_PROGRESS,
}


def get_allowed_production_order_transitions(current_status: str) -> List[str]:
    """Get list of allowed next statuses for a production order"""
    return sorted(str(s.value) for s in PRODUCTION_ORDER_TRANSITIONS.get(current_status, set()))


def is_valid_production_order_transition(current_status: str, new_status: str) -> bool:
    """Check if a production order status transition is valid"""
    if current_status == new_status:
        return True  # No change is always valid
    allowed = PRODUCTION_ORDER_TRANSITIONS.get(current_status, set())
    return new_status in allowed


# =============================================================================
# Production Stage Status
# =============================================================================

class StageStatus(str, Enum):
    """Valid status values for Production Stages"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    REJECTED = "rejected"
    REWORK = "rework"


STAGE_TRANSITIONS: Dict[str, Set[str]] = {
    StageStatus.PENDING: {
        StageStatus.IN_PROGRESS,
    },
    StageStatus.IN_PROGRESS: {
        StageStatus.COMPLETED,
        StageStatus.REJECTED,
        StageStatus.REWORK,
        StageStatus.ON_HOLD,  # Can pause/resume
    },
    StageStatus.ON_HOLD: {
        StageStatus.IN_PROGRESS,
    },
    StageStatus.REWORK: {
        StageStatus.IN_PROGRESS,  # Re-attempt
    },
    StageStatus.REJECTED: {
        StageStatus.IN_PROGRESS,  # Re-attempt while the order is still open
    },
    StageStatus.COMPLETED: set(),  # Terminal
}

TERMINAL_STAGE_STATUSES: Set[str] = {
    StageStatus.COMPLETED,
    StageStatus.REJECTED,
}


def get_allowed_stage_transitions(current_status: str) -> List[str]:
    """Get list of allowed next statuses for a production stage"""
    return sorted(str(s.value) for s in STAGE_TRANSITIONS.get(current_status, set()))


def is_valid_stage_transition(current_status: str, new_status: str) -> bool:
    """Check if a stage status transition is valid"""
    allowed = STAGE_TRANSITIONS.get(current_status, set())
    return new_status in allowed


# =============================================================================
# Stage Actions
# =============================================================================

class StageAction(str, Enum):
    """Shop-floor actions accepted by transition_stage"""
    START = "start"
    HOLD = "hold"
    RESUME = "resume"
    RECORD_CONSUMPTION = "record_consumption"
    RECORD_CHECKPOINT = "record_checkpoint"
    COMPLETE = "complete"
    REJECT = "reject"
    REWORK = "rework"

    @classmethod
    def _missing_(cls, value):
        # Accept camelCase spellings used by shop-floor clients (recordConsumption)
        if isinstance(value, str):
            normalized = "".join(f"_{c.lower()}" if c.isupper() else c for c in value).lstrip("_")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


# =============================================================================
# Validation Helpers
# =============================================================================

def _status_value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def validate_production_order_transition(current: str, new: str) -> None:
    """Validate and raise error if transition is invalid"""
    if not is_valid_production_order_transition(current, new):
        allowed = get_allowed_production_order_transitions(current)
        raise InvalidTransitionError(
            f"Invalid production order status transition: '{_status_value(current)}' -> "
            f"'{_status_value(new)}'. Allowed: {allowed if allowed else 'none (terminal state)'}",
            current_state=_status_value(current),
            allowed_states=allowed,
        )


def validate_stage_transition(stage_number: int, current: str, new: str) -> None:
    """Validate and raise error if transition is invalid"""
    if not is_valid_stage_transition(current, new):
        allowed = get_allowed_stage_transitions(current)
        raise InvalidTransitionError(
            f"Invalid status transition for stage {stage_number}: '{_status_value(current)}' -> "
            f"'{_status_value(new)}'. Allowed: {allowed if allowed else 'none (terminal state)'}",
            current_state=_status_value(current),
            allowed_states=allowed,
        )
