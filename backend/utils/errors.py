"""API error taxonomy and the uniform error envelope.

Every error raised by the billing core is an ApiError subclass. The
exception handler in server.py renders them through error_envelope() so
callers always see the same shape:

    {success, status, status_code, message, code, errors, path, method, timestamp}
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import Request

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Validation Error",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


class ApiError(Exception):
    """Base error with an HTTP status class and a machine-readable code."""
    status_code = 500
    default_code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        errors: Optional[Any] = None,
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.errors = errors
        super().__init__(self.message)

    @property
    def status(self) -> str:
        return STATUS_MESSAGES.get(self.status_code, "Error")


class BadRequest(ApiError):
    status_code = 400
    default_code = "BAD_REQUEST"
    default_message = "Bad request"


class InvalidPlan(BadRequest):
    default_code = "INVALID_PLAN"
    default_message = "Invalid plan"


class PaymentMethodRequired(BadRequest):
    default_code = "PAYMENT_METHOD_REQUIRED"
    default_message = "Payment method is required for paid plans."


class Unauthorized(ApiError):
    status_code = 401
    default_code = "UNAUTHORIZED"
    default_message = "Not authenticated"


class Forbidden(ApiError):
    status_code = 403
    default_code = "FORBIDDEN"
    default_message = "Forbidden"


class SubscriptionInactive(Forbidden):
    default_code = "SUBSCRIPTION_INACTIVE"
    default_message = "Subscription is inactive. Please renew or upgrade."


class FeatureNotAvailable(Forbidden):
    default_code = "FEATURE_NOT_AVAILABLE"
    default_message = "This feature requires a higher plan."


class PlanLimitReached(Forbidden):
    default_code = "PLAN_LIMIT_REACHED"
    default_message = "You have reached the limit for your plan."


class NotFound(ApiError):
    status_code = 404
    default_code = "NOT_FOUND"
    default_message = "Not found"


class TooManyRequests(ApiError):
    status_code = 429
    default_code = "RATE_LIMITED"
    default_message = "Rate limit exceeded"


class PaymentProviderError(ApiError):
    """Any failed outbound call to a payment provider.

    provider_message keeps the raw provider/SDK text for logging; it is never
    part of the envelope returned to callers.
    """
    status_code = 502
    default_code = "PAYMENT_PROVIDER_ERROR"
    default_message = "Payment provider request failed. Please try again."
    retryable = True

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        provider_message: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.provider_message = provider_message


class PaymentInitError(PaymentProviderError):
    default_code = "PAYMENT_INIT_FAILED"
    default_message = "Failed to initialize payment. Please try again."


def error_envelope(
    request: Request,
    status_code: int,
    message: str,
    code: Optional[str] = None,
    errors: Optional[Any] = None,
) -> Dict[str, Any]:
    """Build the uniform error body for a request."""
    return {
        "success": False,
        "status": STATUS_MESSAGES.get(status_code, "Error"),
        "status_code": status_code,
        "message": message,
        "code": code,
        "errors": errors,
        "path": request.url.path,
        "method": request.method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def api_error_envelope(request: Request, exc: ApiError) -> Dict[str, Any]:
    if isinstance(exc, PaymentProviderError) and exc.provider_message:
        logger.warning(
            "PAYMENT_PROVIDER_ERROR code=%s path=%s provider_message=%s",
            exc.code, request.url.path, exc.provider_message,
        )
    return error_envelope(request, exc.status_code, exc.message, exc.code, exc.errors)
