"""Domain errors and their HTTP rendering.

Services raise these; the handlers registered in ``app.main`` turn them into
``{"error": <code>, "message": <text>, ...details}`` JSON bodies. The ``code``
is stable and meant for machines, the message is for people.
"""

from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Base class for errors that map onto a client-facing response."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_code: str = "error"

    def __init__(self, message: str, code: str | None = None, **details: Any):
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationFailed(AppError):
    """Missing or malformed input. Nothing was mutated."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "validation_error"


class NotFound(AppError):
    """Absent, or outside the caller's tenant. The two cases are indistinguishable."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "forbidden"


class Conflict(AppError):
    """The requested interval collides with an existing reservation."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "time_conflict"


class PreconditionFailed(AppError):
    """The entity exists but is in a state that blocks the operation."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "precondition_failed"


class UpstreamUnavailable(AppError):
    """An explicit call to Google Calendar (connect, watch) failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "calendar_unavailable"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "message": "Invalid request data", "details": details},
    )
