import enum
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field


class ErrorCode(str, enum.Enum):
    TRIAL_NO_STRIPE = "TRIAL_NO_STRIPE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANNOT_REACTIVATE = "CANNOT_REACTIVATE"
    SUBSCRIPTION_FULLY_CANCELED = "SUBSCRIPTION_FULLY_CANCELED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    SUSPENDED = "SUSPENDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    PLAN_NOT_AVAILABLE = "PLAN_NOT_AVAILABLE"
    NO_CHANGE = "NO_CHANGE"
    PENDING_CANCELLATION = "PENDING_CANCELLATION"
    NOT_SCHEDULED_FOR_CANCELLATION = "NOT_SCHEDULED_FOR_CANCELLATION"
    TRIAL_ACCOUNT = "TRIAL_ACCOUNT"
    UPSELL_NOT_FOUND = "UPSELL_NOT_FOUND"
    LIMIT_REACHED = "LIMIT_REACHED"
    FORBIDDEN = "FORBIDDEN"
    TRIAL_ALREADY_USED = "TRIAL_ALREADY_USED"
    ALREADY_SUBSCRIBED = "ALREADY_SUBSCRIBED"


# HTTP status used by the routes when a Failure reaches the API boundary
HTTP_STATUS_BY_CODE = {
    ErrorCode.TRIAL_NO_STRIPE: 409,
    ErrorCode.PAYMENT_FAILED: 402,
    ErrorCode.CANNOT_REACTIVATE: 409,
    ErrorCode.SUBSCRIPTION_FULLY_CANCELED: 409,
    ErrorCode.COOLDOWN_ACTIVE: 429,
    ErrorCode.SUSPENDED: 403,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NO_SUBSCRIPTION: 404,
    ErrorCode.SUBSCRIPTION_INACTIVE: 409,
    ErrorCode.PLAN_NOT_AVAILABLE: 400,
    ErrorCode.NO_CHANGE: 400,
    ErrorCode.PENDING_CANCELLATION: 409,
    ErrorCode.NOT_SCHEDULED_FOR_CANCELLATION: 409,
    ErrorCode.TRIAL_ACCOUNT: 403,
    ErrorCode.UPSELL_NOT_FOUND: 404,
    ErrorCode.LIMIT_REACHED: 403,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.TRIAL_ALREADY_USED: 403,
    ErrorCode.ALREADY_SUBSCRIBED: 409,
}


class Failure(BaseModel):
    """Expected business outcome that stops an operation. Returned, never raised."""
    code: ErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 400)

    def to_detail(self) -> Dict[str, Any]:
        detail = {"error": self.code.value, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.http_status, detail=self.to_detail())


class PlanNotFoundError(ValueError):
    """Raised when a plan id does not exist in the catalog"""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} not found")


class InvalidStateTransition(Exception):
    """Raised by the state machine for a transition the current status does not allow"""

    def __init__(self, event: str, status: Optional[str]):
        self.event = event
        self.status = status
        super().__init__(f"Cannot apply {event} to a subscription in status {status}")


class PaymentProcessorError(Exception):
    """Wraps any error returned by the payment processor"""

    def __init__(self, message: str, processor_code: Optional[str] = None):
        self.processor_code = processor_code
        super().__init__(message)
