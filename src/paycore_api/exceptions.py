"""FastAPI exception handlers for converting PaymentError to HTTP responses.

Every ``PaymentError`` maps to a single status through its ``ErrorCode``
(see ``paycore.models.errors.ERROR_HTTP_STATUS``):

- 400 Bad Request: malformed command
- 401 Unauthorized: bad webhook signature
- 402 Payment Required: gateway declined
- 404 Not Found: unknown transaction or subscription
- 409 Conflict: duplicate in-flight request or invalid state
- 502 Bad Gateway: gateway unavailable after retries

Request-validation failures use the same body shape with code
``VALIDATION_FAILED``. Anything else becomes a generic 500 that does not
leak internal detail.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paycore.models.errors import InternalError, PaymentError, PaymentValidationError
from paycore.utils.logging import get_logger

logger = get_logger(__name__)


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render a PaymentError with its mapped status and standard body."""
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_error_response().model_dump(mode="json"),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request-validation failures as VALIDATION_FAILED."""
    details = {
        ".".join(str(part) for part in error["loc"]): error["msg"] for error in exc.errors()
    }
    error = PaymentValidationError(details=details)
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_error_response().model_dump(mode="json"),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for uncaught exceptions: log, return a generic 500."""
    logger.exception("Unhandled exception: %s", exc)
    error = InternalError()
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_error_response().model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(PaymentError, payment_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
