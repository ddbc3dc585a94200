"""Error taxonomy for the coin economy and the HTTP handlers that normalize it."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gigcoins.core.logging import get_request_id

logger = logging.getLogger("gigcoins.errors")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def details(self) -> Dict[str, Any]:
        """Extra fields merged into the error payload."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InsufficientCoinsError(AppError):
    """Raised when a spend exceeds the balance. Always carries needed/available."""
    code = "insufficient_coins"
    status_code = 402

    def __init__(self, needed: int, available: int, **kwargs):
        super().__init__(f"Insufficient coins: need {needed}, have {available}", **kwargs)
        self.needed = needed
        self.available = available

    def details(self) -> Dict[str, Any]:
        return {"needed": self.needed, "available": self.available}


class AlreadySubscribedError(ConflictError):
    code = "already_subscribed"

    def __init__(self, current_plan: str, **kwargs):
        super().__init__(f"User already has an active subscription ({current_plan})", **kwargs)
        self.current_plan = current_plan

    def details(self) -> Dict[str, Any]:
        return {"current_plan": self.current_plan}


class CheckoutInProgressError(ConflictError):
    """A subscription checkout for this user is still awaiting payment."""
    code = "checkout_in_progress"

    def __init__(self, payment_ref: str, **kwargs):
        super().__init__("A subscription checkout is already awaiting payment", **kwargs)
        self.payment_ref = payment_ref

    def details(self) -> Dict[str, Any]:
        return {"payment_ref": self.payment_ref}


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class NoActiveSubscriptionError(NotFoundError):
    code = "no_active_subscription"


class NoOpError(ConflictError):
    """Requested plan change targets the plan already in effect."""
    code = "no_op"


class PaymentGatewayError(AppError):
    """Upstream payment gateway failure. Surfaced to the caller, never retried here."""
    code = "payment_gateway_error"
    status_code = 502


class BalanceConflictError(AppError):
    """Optimistic balance update lost the race too many times; safe to retry later."""
    code = "balance_conflict"
    status_code = 503


class DuplicatePaymentCompletionError(AppError):
    """A payment reference was already completed. Handled internally as a no-op."""
    code = "duplicate_payment_completion"
    status_code = 200


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    request_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    The one error shape every route returns:

        {"error": {"code", "message", "request_id", ...details}, "detail": message}

    The request id is echoed in the x-request-id header as well.
    """
    rid = request_id or _request_id(request)
    error = {"code": code, "message": message, "request_id": rid}
    error.update(details or {})
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    response = error_response(
        request, exc.status_code, exc.code, exc.message, request_id=exc.request_id, details=exc.details()
    )
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={
            "request_id": response.headers["x-request-id"],
            "error_code": exc.code,
            "error_message": exc.message,
            "status": exc.status_code,
        },
    )
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    response = error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))
    logger.warning("http.error", extra={"request_id": response.headers["x-request-id"], "error_code": code,
                                        "status": exc.status_code})
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    fields = [f for f in fields if f]
    message = "Invalid request: " + ", ".join(fields) if fields else "Invalid request"
    response = error_response(request, 400, ValidationError.code, message)
    logger.warning("request.invalid", extra={"request_id": response.headers["x-request-id"],
                                             "error_code": ValidationError.code})
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    response = error_response(request, 500, "internal_error", "Unexpected error")
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": response.headers["x-request-id"],
                                                             "error_code": "internal_error"})
    return response
