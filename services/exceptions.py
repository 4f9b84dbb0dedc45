"""
Error taxonomy for the dunning and account-recovery services
"""
from typing import Any, Dict, Optional
from http import HTTPStatus


class DunningError(Exception):
    """
    Base exception for recovery/dunning errors.

    Attributes:
        message: Error message
        status_code: HTTP status code the API layer should answer with
        code: Machine-readable error code
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class AccountStateConflictError(DunningError):
    """Raised when the account state row changed between read and write. Retryable."""

    def __init__(self, customer_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Account state for customer {customer_id} was modified concurrently",
            status_code=HTTPStatus.CONFLICT,
            code="ACCOUNT_STATE_CONFLICT",
            details={"customer_id": customer_id, "retryable": True, **(details or {})}
        )


class InvalidStateTransitionError(DunningError):
    """Raised when a transition is not an edge of the account state machine."""

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            message=f"Invalid account state transition: {from_state} -> {to_state}",
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            code="INVALID_STATE_TRANSITION",
            details={"from_state": from_state, "to_state": to_state}
        )


class AccountStateNotFoundError(DunningError):
    def __init__(self, account_state_id: str):
        super().__init__(
            message=f"Account state {account_state_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
            code="ACCOUNT_STATE_NOT_FOUND",
            details={"account_state_id": account_state_id}
        )


class StoreError(DunningError):
    """Raised when the customer/subscription store is unavailable or rejects a query."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            code="STORE_ERROR",
            details=details
        )


class GatewayError(DunningError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_GATEWAY,
            code="GATEWAY_ERROR",
            details=details
        )


class GatewayTimeoutError(GatewayError):
    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message=f"Payment gateway call '{operation}' timed out after {timeout_seconds}s",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )
        self.status_code = HTTPStatus.GATEWAY_TIMEOUT


class WebhookSignatureError(DunningError):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            message=message,
            status_code=HTTPStatus.BAD_REQUEST,
            code="INVALID_WEBHOOK_SIGNATURE"
        )


class CustomerNotFoundError(DunningError):
    def __init__(self, customer_id: str):
        super().__init__(
            message=f"Customer {customer_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
            code="CUSTOMER_NOT_FOUND",
            details={"customer_id": customer_id}
        )
