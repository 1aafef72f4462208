"""
Custom exceptions for BackerStore
Provides structured error handling across all domains
"""
from typing import Any, Dict, Optional


class BackerStoreError(Exception):
    """Base exception for all BackerStore errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BackerStoreError):
    """Raised when input validation fails

    ``reason`` is a stable machine-readable code (``empty_cart``,
    ``quantity_out_of_bounds``, ``unknown_item`` ...) callers can switch on.
    """

    def __init__(self, message: str, field: Optional[str] = None, reason: Optional[str] = None, **details):
        if reason:
            details["reason"] = reason
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field, **details} if field else details,
            status_code=400,
        )
        self.field = field
        self.reason = reason


class NotFoundError(BackerStoreError):
    """Raised when a resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)},
            status_code=404,
        )
        self.resource = resource
        self.identifier = identifier


class RuleStoreUnavailable(BackerStoreError):
    """Raised when the rule store cannot be read"""

    def __init__(self, message: str, category: Optional[str] = None, key: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="RULE_STORE_UNAVAILABLE",
            details={"category": category, "key": key},
            status_code=503,
        )


class PersistenceError(BackerStoreError):
    """Raised when a database write fails

    When the write followed a successful gateway call, ``gateway_reference``
    names the gateway object left without a local record.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        gateway_reference: Optional[str] = None,
        **details,
    ):
        super().__init__(
            message=message,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, "gateway_reference": gateway_reference, **details},
            status_code=500,
        )
        self.operation = operation
        self.gateway_reference = gateway_reference


class ReconciliationConflict(BackerStoreError):
    """Raised when an event implies a status the order cannot reach"""

    def __init__(
        self,
        order_id: str,
        current_status: str,
        implied_status: str,
        event_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Order {order_id} cannot move from {current_status} to {implied_status}",
            error_code="RECONCILIATION_CONFLICT",
            details={
                "order_id": order_id,
                "current_status": current_status,
                "implied_status": implied_status,
                "event_id": event_id,
            },
            status_code=409,
        )
        self.order_id = order_id
        self.current_status = current_status
        self.implied_status = implied_status
        self.event_id = event_id
