"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from legalinsight.core.logging import get_request_id


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
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class TransientQueryError(AppError):
    """A store read failed in a way that may succeed on retry."""
    code = "transient_query_failure"
    status_code = 503


class InconsistentWriteError(AppError):
    """A multi-row write could not be committed atomically."""
    code = "inconsistent_write"
    status_code = 500


class InvalidMappingError(AppError):
    """A purchase product could not be mapped to a paid plan."""
    code = "invalid_mapping"
    status_code = 422

    def __init__(self, message: str, *, product_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.product_id = product_id

    def details(self) -> Dict[str, Any]:
        return {"product_id": self.product_id}


class EntitlementDeniedError(AppError):
    """Raised when the access gate denies a feature."""
    code = "entitlement_denied"
    status_code = 403

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        feature: Optional[str] = None,
        plan_id: Optional[str] = None,
        required_plan: Optional[str] = None,
        remaining_credits: Any = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.feature = feature
        self.plan_id = plan_id
        self.required_plan = required_plan
        self.remaining_credits = remaining_credits

    def details(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "feature": self.feature,
            "plan_id": self.plan_id,
            "required_plan": self.required_plan,
            "remaining_credits": self.remaining_credits,
        }


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error.update(details)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details())
    logger = logging.getLogger("legalinsight")
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
    logger = logging.getLogger("legalinsight")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    payload = _error_payload("validation_error", message, rid)
    logging.getLogger("legalinsight").warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 422})
    response = JSONResponse(status_code=422, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("legalinsight")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
