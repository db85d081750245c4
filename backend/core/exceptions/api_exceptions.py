from fastapi import HTTPException
from datetime import datetime
from core.utils.uuid_utils import uuid7
from typing import Any, Dict, Optional


class APIException(HTTPException):
    """Custom API exception with enhanced error details"""

    def __init__(
        self,
        status_code: int,
        message: str = "An unexpected API error occurred",
        detail: Optional[str] = None,
        error_code: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **kwargs
    ):
        self.message = message
        self.detail = detail or message
        self.error_code = error_code or f"ERR_{status_code}"
        self.correlation_id = correlation_id or str(uuid7())
        self.timestamp = datetime.now().isoformat()

        super().__init__(status_code=status_code, detail=self.detail, **kwargs)


class ValidationException(APIException):
    """Missing references, malformed delivery groups, unpaid orders handed to the splitter"""

    def __init__(self, message: str = "Validation failed", errors: Optional[Dict[str, Any]] = None):
        self.errors = errors or {}
        super().__init__(
            status_code=422,
            message=message,
            error_code="VALIDATION_ERROR"
        )


class NotFoundException(APIException):
    """Exception for resource not found errors"""

    def __init__(self, message: str = "Resource not found", resource: Optional[str] = None):
        self.resource = resource
        super().__init__(
            status_code=404,
            message=message,
            error_code="NOT_FOUND"
        )


class ConflictException(APIException):
    """Exception for conflict errors"""

    def __init__(self, message: str = "Resource conflict", error_code: str = "CONFLICT_ERROR"):
        super().__init__(
            status_code=409,
            message=message,
            error_code=error_code
        )


class InvalidTransitionException(ConflictException):
    """An order status change that the transition table does not allow"""

    def __init__(self, from_status: Any, to_status: Any):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message=f"Order cannot move from '{getattr(from_status, 'value', from_status)}' "
                    f"to '{getattr(to_status, 'value', to_status)}'",
            error_code="INVALID_TRANSITION"
        )


class PaymentStatusRegressionException(ConflictException):
    """Attempt to move a succeeded payment back to pending or failed"""

    def __init__(self, order_id: Any, to_status: Any):
        self.order_id = order_id
        self.to_status = to_status
        super().__init__(
            message=f"Payment of order {order_id} already succeeded and cannot become "
                    f"'{getattr(to_status, 'value', to_status)}'",
            error_code="PAYMENT_STATUS_REGRESSION"
        )


class DatabaseException(APIException):
    """Exception for database errors"""

    def __init__(self, message: str = "Database error occurred", metadata: Optional[Dict[str, Any]] = None):
        self.metadata = metadata or {}
        super().__init__(
            status_code=500,
            message=message,
            error_code="DATABASE_ERROR"
        )


class ExternalServiceException(APIException):
    """Payment gateway or fulfillment dispatcher errors, timeouts and 5xx responses"""

    def __init__(self, message: str = "External service error", service: Optional[str] = None):
        self.service = service
        super().__init__(
            status_code=502,
            message=message,
            error_code="EXTERNAL_SERVICE_ERROR"
        )
