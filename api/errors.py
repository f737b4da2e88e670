"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from billing.exceptions import (
    BillingError,
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
BILLING_ERROR_STATUS = [
    (InvalidInputError, 400, ErrorCodes.VALIDATION_ERROR),
    (NotFoundError, 404, ErrorCodes.NOT_FOUND),
    (ForbiddenError, 403, ErrorCodes.FORBIDDEN),
    (InvariantViolationError, 409, ErrorCodes.INVALID_STATUS_TRANSITION),
    (ConflictError, 409, ErrorCodes.CONFLICT),
]


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _json_error(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, message, _request_id(request)).model_dump(mode="json"),
    )


def _format_validation_errors(errors: list[dict]) -> str:
    parts = []
    for err in errors:
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(parts)


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        for exc_type, status_code, code in BILLING_ERROR_STATUS:
            if isinstance(exc, exc_type):
                return _json_error(request, status_code, code, str(exc))
        return _json_error(request, 400, ErrorCodes.INVALID_REQUEST, str(exc))

    @app.exception_handler(ValidationError)
    async def model_validation_error_handler(request: Request, exc: ValidationError):
        return _json_error(
            request, 422, ErrorCodes.VALIDATION_ERROR, _format_validation_errors(exc.errors())
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _json_error(request, 400, ErrorCodes.INVALID_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _json_error(
            request, 422, ErrorCodes.VALIDATION_ERROR, _format_validation_errors(exc.errors())
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _json_error(request, 500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")
