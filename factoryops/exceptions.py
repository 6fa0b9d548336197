"""
FactoryOps Production Engine - Custom Exception Hierarchy

Provides structured, typed exceptions with error codes so the surrounding
service layer can map every failure of a production order action to a
rejection with an explanatory reason.

Usage:
    from factoryops.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError("Production order", order_id)

    raise InvalidTransitionError(
        "Stage 2 cannot start before stage 1 is completed",
        current_state="pending",
    )
"""
from typing import Any, Dict, Optional


class FactoryOpsException(Exception):
    """
    Base exception for all production engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND", "INVALID_TRANSITION")
        status_code: HTTP status code the service layer should return
        details: Additional context for debugging
    """

    error_code: str = "FACTORYOPS_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# ===================
# 400 Bad Request Errors
# ===================


class ValidationError(FactoryOpsException):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details=details)


# ===================
# 404 Not Found Errors
# ===================


class NotFoundError(FactoryOpsException):
    """Raised when a production order, stage or allocation is not found."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details=details)


# ===================
# 409 Conflict Errors
# ===================


class ConflictError(FactoryOpsException):
    """Raised when there's a resource conflict."""

    error_code = "CONFLICT"
    status_code = 409

    def __init__(
        self,
        message: str = "Resource conflict",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)


class InvalidTransitionError(ConflictError):
    """Raised when an action is invalid for the current order or stage state."""

    error_code = "INVALID_TRANSITION"

    def __init__(
        self,
        message: str = "Transition not allowed in current state",
        *,
        current_state: Optional[str] = None,
        allowed_states: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if current_state:
            details["current_state"] = current_state
        if allowed_states:
            details["allowed_states"] = allowed_states
        super().__init__(message, details=details)


class PreconditionFailedError(InvalidTransitionError):
    """Raised when a transition is allowed from the current state but its preconditions are not met."""

    error_code = "PRECONDITION_FAILED"

    def __init__(
        self,
        message: str = "Transition precondition not met",
        *,
        precondition: Optional[str] = None,
        current_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if precondition:
            details["precondition"] = precondition
        super().__init__(message, current_state=current_state, details=details)


class DuplicateError(ConflictError):
    """Raised when attempting to create a duplicate resource."""

    error_code = "DUPLICATE_ERROR"

    def __init__(
        self,
        resource: str = "Resource",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        message = f"{resource} already exists"
        if field and value:
            message = f"{resource} with {field}='{value}' already exists"
        super().__init__(message, details=details)


class VersionConflictError(ConflictError):
    """Raised when the order was modified since it was loaded (optimistic concurrency loss)."""

    error_code = "VERSION_CONFLICT"

    def __init__(
        self,
        message: str = "Production order was modified by another request",
        *,
        expected_version: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if expected_version is not None:
            details["expected_version"] = expected_version
        super().__init__(message, details=details)


# ===================
# 422 Unprocessable Entity Errors
# ===================


class BusinessRuleError(FactoryOpsException):
    """Raised when a business rule is violated."""

    error_code = "BUSINESS_RULE_ERROR"
    status_code = 422

    def __init__(
        self,
        message: str = "Business rule violation",
        *,
        rule: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if rule:
            details["rule"] = rule
        super().__init__(message, details=details)


class InsufficientStockError(BusinessRuleError):
    """Raised by the material ledger when available stock cannot cover a reservation."""

    error_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        item_id: str,
        *,
        requested: float,
        available: float,
        batch_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["item_id"] = item_id
        details["requested"] = requested
        details["available"] = available
        if batch_id:
            details["batch_id"] = batch_id
        message = f"Insufficient stock for {item_id}: requested {requested}, available {available}"
        super().__init__(message, details=details)


class OverConsumptionError(BusinessRuleError):
    """Raised by the material ledger when consumption exceeds what is still reserved."""

    error_code = "OVER_CONSUMPTION"

    def __init__(
        self,
        allocation_id: str,
        *,
        requested: float,
        remaining: float,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["allocation_id"] = allocation_id
        details["requested"] = requested
        details["remaining"] = remaining
        message = (
            f"Consumption of {requested} exceeds reserved quantity {remaining} "
            f"on allocation {allocation_id}"
        )
        super().__init__(message, details=details)


# ===================
# 500 Internal Server Errors
# ===================


class LedgerCompensationError(FactoryOpsException):
    """Raised when a compensating ledger call fails after an aborted save."""

    error_code = "LEDGER_COMPENSATION_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str = "Material ledger compensation failed",
        *,
        allocation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if allocation_id:
            details["allocation_id"] = allocation_id
        super().__init__(message, details=details)
