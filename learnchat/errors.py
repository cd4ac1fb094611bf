import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    """Base class for domain errors surfaced to API clients."""

    status_code = 400
    code = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MessagingError):
    status_code = 400
    code = "validation_error"


class NotFound(MessagingError):
    status_code = 404
    code = "not_found"


class PermissionDenied(MessagingError):
    status_code = 403
    code = "permission_denied"


class RateLimited(MessagingError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(message)


class Conflict(MessagingError):
    status_code = 409
    code = "conflict"


class Unavailable(MessagingError):
    status_code = 503
    code = "unavailable"


def _error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[dict] = None,
    details: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MessagingError)
    async def messaging_error_handler(request: Request, exc: MessagingError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")
        return _error_response(exc.status_code, exc.code, exc.message, headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "message": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return _error_response(ValidationError.status_code, ValidationError.code, "Invalid request", details=details)

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    async def store_unavailable_handler(request: Request, exc: Exception):
        logger.error(f"Persistence store error on {request.method} {request.url.path}: {exc}")
        return _error_response(Unavailable.status_code, Unavailable.code, "Persistence store unavailable")

    @app.exception_handler(asyncio.TimeoutError)
    async def timeout_handler(request: Request, exc: asyncio.TimeoutError):
        logger.error(f"Timed out handling {request.method} {request.url.path}")
        return _error_response(Unavailable.status_code, Unavailable.code, "Request timed out")
