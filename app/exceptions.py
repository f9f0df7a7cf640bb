"""
Error types and RFC 7807 problem responses.

API errors are PlatformException subclasses rendered as
``application/problem+json``. SendError, ExecutionError and
TrackingDecodeError stay inside the services and never reach a client as-is.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

PROBLEM_TYPE_BASE = "https://campaigns.example.com/problems"
PROBLEM_MEDIA_TYPE = "application/problem+json"


class ErrorCode(str, Enum):
    """Machine-readable codes carried in every problem response."""

    VALIDATION_ERROR = "VAL_001"
    REQUEST_ERROR = "REQ_001"
    NOT_FOUND = "RES_001"
    INVALID_STATE = "BIZ_001"
    INTERNAL_ERROR = "SRV_001"


# Codes for errors raised by the framework rather than by our handlers
_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.INVALID_STATE,
    422: ErrorCode.VALIDATION_ERROR,
}


def _trace_id() -> str:
    return uuid.uuid4().hex[:12]


def _title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


class ProblemDetail(BaseModel):
    type: str = "about:blank"
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def build(
        cls,
        status_code: int,
        code: ErrorCode,
        detail: str,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        trace_id: Optional[str] = None,
    ) -> "ProblemDetail":
        return cls(
            type=f"{PROBLEM_TYPE_BASE}/{code.value.lower().replace('_', '-')}",
            title=_title(status_code),
            status=status_code,
            detail=detail,
            instance=instance,
            code=code.value,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            trace_id=trace_id or _trace_id(),
            errors=errors,
        )


class PlatformException(HTTPException):
    """An API error that renders as a problem response."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.errors = errors
        self.trace_id = _trace_id()
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class NotFoundError(PlatformException):
    def __init__(self, resource: str, resource_id):
        super().__init__(404, ErrorCode.NOT_FOUND, f"{resource} with ID {resource_id} was not found")


class InvalidStateError(PlatformException):
    """Operation not allowed in the campaign's current status (409)."""

    def __init__(self, detail: str):
        super().__init__(409, ErrorCode.INVALID_STATE, detail)


class ValidationError(PlatformException):
    def __init__(self, detail: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(422, ErrorCode.VALIDATION_ERROR, detail, errors=errors)


class SendError(Exception):
    """A channel provider refused or failed a single message."""


class ExecutionError(Exception):
    """A campaign run could not continue; the run is marked failed."""


class TrackingDecodeError(ValueError):
    """A tracking token could not be decoded."""


def _problem_response(
    request: Request,
    problem: ProblemDetail,
    allowed_origins: List[str],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    response = JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_MEDIA_TYPE,
        headers=headers,
    )
    # Handlers run outside CORSMiddleware for unhandled errors, so echo the origin here
    origin = request.headers.get("origin", "")
    if origin and origin in allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


def create_exception_handlers(allowed_origins: List[str]):
    """
    Build the handlers registered in main.py, keyed by what they handle:
    ``platform``, ``http``, ``validation`` and ``generic``.
    """

    async def handle_platform_exception(request: Request, exc: PlatformException) -> JSONResponse:
        logger.warning(
            f"{exc.code.value}: {exc.detail}",
            extra={"trace_id": exc.trace_id, "status_code": exc.status_code, "path": request.url.path},
        )
        problem = ProblemDetail.build(
            exc.status_code, exc.code, str(exc.detail),
            instance=request.url.path, errors=exc.errors, trace_id=exc.trace_id,
        )
        return _problem_response(request, problem, allowed_origins, headers=exc.headers)

    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        fallback = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.REQUEST_ERROR
        code = _STATUS_CODES.get(exc.status_code, fallback)
        problem = ProblemDetail.build(exc.status_code, code, str(exc.detail), instance=request.url.path)
        return _problem_response(request, problem, allowed_origins, headers=getattr(exc, "headers", None))

    async def handle_validation_exception(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        problem = ProblemDetail.build(
            422, ErrorCode.VALIDATION_ERROR, "Request validation failed",
            instance=request.url.path, errors=errors,
        )
        return _problem_response(request, problem, allowed_origins)

    async def handle_generic_exception(request: Request, exc: Exception) -> JSONResponse:
        from app.config import settings

        trace_id = _trace_id()
        logger.error(
            f"Unhandled exception: {exc}",
            extra={"trace_id": trace_id, "path": request.url.path},
            exc_info=exc,
        )
        # Internal details only leave the process in debug mode
        detail = str(exc) if settings.DEBUG else "An unexpected error occurred"
        problem = ProblemDetail.build(
            500, ErrorCode.INTERNAL_ERROR, detail, instance=request.url.path, trace_id=trace_id
        )
        return _problem_response(request, problem, allowed_origins)

    return {
        "platform": handle_platform_exception,
        "http": handle_http_exception,
        "validation": handle_validation_exception,
        "generic": handle_generic_exception,
    }
