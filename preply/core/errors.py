"""Error taxonomy and FastAPI handlers.

Every user-facing error body is ``{"error": <short message>, "code": ...,
"request_id": ...}``. Internal detail only reaches the server log.
"""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from preply.core.logging import get_request_id


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


class ConfigurationError(AppError):
    """Missing credentials; the whole service is unavailable."""
    code = "service_unavailable"
    status_code = 503


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthError(AppError):
    code = "unauthenticated"
    status_code = 401


class BusinessRuleError(AppError):
    code = "conflict"
    status_code = 409


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class IntegrityError(AppError):
    """Stored data contradicts configuration. Never defaulted."""
    code = "integrity_error"
    status_code = 500


class GatewayError(AppError):
    code = "gateway_error"
    status_code = 500


class PersistenceError(AppError):
    code = "persistence_error"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {"error": message, "code": code, "request_id": request_id}


def _respond(status_code: int, payload: dict, rid: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger = logging.getLogger("preply")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(exc.status_code, _error_payload(exc.code, exc.message, rid), rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    logger = logging.getLogger("preply")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, _error_payload(code, message, rid), rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    logger = logging.getLogger("preply")
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return _respond(400, _error_payload("validation_error", "Invalid request data", rid), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("preply")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(500, _error_payload("internal_error", "Unexpected error", rid), rid)
