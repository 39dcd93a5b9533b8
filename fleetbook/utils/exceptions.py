from fastapi import HTTPException, status


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR CODES (API layer; the reservation core carries its own codes)
# ═══════════════════════════════════════════════════════════════════════════════
class ErrorCode:
    VALIDATION_ERROR      = "VALIDATION_ERROR"
    UNAUTHORIZED          = "UNAUTHORIZED"
    TOKEN_EXPIRED         = "TOKEN_EXPIRED"
    FORBIDDEN             = "FORBIDDEN"
    NOT_FOUND             = "NOT_FOUND"
    DUPLICATE_ENTRY       = "DUPLICATE_ENTRY"
    VEHICLE_IN_USE        = "VEHICLE_IN_USE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


# ═══════════════════════════════════════════════════════════════════════════════
# BASE EXCEPTION
# ═══════════════════════════════════════════════════════════════════════════════
class AppException(HTTPException):
    """
    HTTP-level failure raised by the API layer itself (authentication,
    vehicle administration). Failures raised by the reservation core are
    ReservationError subclasses and are mapped in the error handler.

    Subclasses set `status_code`, `error_code` and `message` as class
    attributes and only override __init__ when the message is dynamic.
    """
    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code:  str = ErrorCode.VALIDATION_ERROR
    message:     str = "Bad request"
    field:       str | None = None

    def __init__(self, message: str | None = None, field: str | None = None, details: list | None = None):
        super().__init__(status_code=self.status_code, detail={
            "message": message or self.message,
            "error": {
                "code":    self.error_code,
                "details": details,
                "field":   field or self.field,
            }
        })


# ─── Authentication ───────────────────────────────────────────────────────────
class UnauthorizedException(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code  = ErrorCode.UNAUTHORIZED
    message     = "Authentication required"


class TokenExpiredException(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code  = ErrorCode.TOKEN_EXPIRED
    message     = "Access token has expired"


class ForbiddenException(AppException):
    status_code = status.HTTP_403_FORBIDDEN
    error_code  = ErrorCode.FORBIDDEN
    message     = "You do not have permission to perform this action"


# ─── Vehicle administration ───────────────────────────────────────────────────
class NotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code  = ErrorCode.NOT_FOUND

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class DuplicateEntryException(AppException):
    status_code = status.HTTP_409_CONFLICT
    error_code  = ErrorCode.DUPLICATE_ENTRY
    message     = "Record already exists"


class VehicleInUseException(AppException):
    status_code = status.HTTP_409_CONFLICT
    error_code  = ErrorCode.VEHICLE_IN_USE
    message     = "Vehicle is checked out on a trip; its status changes on check-out"
    field       = "status"
