"""Error taxonomy and HTTP error normalization."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from planmeter.core.logging import get_request_id


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


# InvalidArgument

class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class InvalidPeriodUnitError(ValidationError):
    code = "invalid_period_unit"


# NotFound

class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class FeatureNotFoundError(NotFoundError):
    code = "feature_not_found"


class FeatureNotInPlanError(NotFoundError):
    code = "feature_not_in_plan"


class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class SubscriptionNotFoundError(NotFoundError):
    code = "subscription_not_found"


class NoActiveSubscriptionError(NotFoundError):
    code = "no_active_subscription"


# InvalidState

class InvalidStateError(AppError):
    code = "invalid_state"
    status_code = 409


class NotConsumableError(InvalidStateError):
    code = "not_consumable"


class AlreadyRenewedError(InvalidStateError):
    code = "already_renewed"


class NothingToExtendError(InvalidStateError):
    code = "nothing_to_extend"


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class CannotUseFeatureError(QuotaExceededError):
    code = "cannot_use_feature"


class ConcurrencyConflictError(AppError):
    """Raised when a feature or subscription lock cannot be acquired."""
    code = "concurrency_conflict"
    status_code = 409


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("planmeter")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("planmeter")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("planmeter")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
