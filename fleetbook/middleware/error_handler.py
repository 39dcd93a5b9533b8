import logging
import traceback
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from fleetbook.core.errors import ErrorKind, ReservationError
from fleetbook.utils.exceptions import AppException, ErrorCode

logger = logging.getLogger(__name__)

KIND_STATUS = {
    ErrorKind.VALIDATION:         status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_FOUND:          status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT:           status.HTTP_409_CONFLICT,
    ErrorKind.FORBIDDEN:          status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.CONTENTION:         status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_body(message: str, code: str, details=None, field=None) -> dict:
    return {
        "success": False,
        "message": message,
        "error": {"code": code, "details": details, "field": field},
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException subclasses raised by the API layer."""
    detail = exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": detail.get("message", "An error occurred"),
            "error": detail.get("error", {"code": ErrorCode.INTERNAL_SERVER_ERROR}),
        },
        headers=exc.headers,
    )


async def reservation_error_handler(request: Request, exc: ReservationError) -> JSONResponse:
    """
    Map a reservation-core failure onto an HTTP status by its kind.
    Contention is retryable, so the client gets a Retry-After hint.
    """
    status_code = KIND_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    if exc.kind == ErrorKind.CONTENTION:
        logger.warning(f"Contention on {request.method} {request.url.path}: {exc.message}")
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.message, exc.code, field=exc.field),
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten FastAPI's request validation errors into the standard error body."""
    details = []
    for error in exc.errors():
        # loc is a tuple like ("body", "startDate")
        loc = error.get("loc", [])
        field = ".".join(str(l) for l in loc if l != "body") if loc else "unknown"
        details.append({
            "field": field,
            "message": error.get("msg", "Invalid value"),
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body("Validation error. Please check your input.", ErrorCode.VALIDATION_ERROR, details),
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Unique / FK violations that slipped past the service checks."""
    logger.warning(f"IntegrityError on {request.method} {request.url}: {exc.orig}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body("A record with this data already exists.", ErrorCode.DUPLICATE_ENTRY),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception on {request.method} {request.url}\n"
        f"{traceback.format_exc()}"
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("An unexpected error occurred. Please try again later.",
                            ErrorCode.INTERNAL_SERVER_ERROR),
    )
