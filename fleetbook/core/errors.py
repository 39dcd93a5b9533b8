import enum


class ErrorKind(str, enum.Enum):
    VALIDATION         = "VALIDATION"
    NOT_FOUND          = "NOT_FOUND"
    CONFLICT           = "CONFLICT"
    FORBIDDEN          = "FORBIDDEN"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONTENTION         = "CONTENTION"


# ═══════════════════════════════════════════════════════════════════════════════
# BASE CONDITION
# ═══════════════════════════════════════════════════════════════════════════════
class ReservationError(Exception):
    """
    Base class for every condition raised by the reservation core.

    `kind` tells the caller which family the failure belongs to,
    `code` is the machine-readable constant surfaced to API clients.
    """
    kind: ErrorKind = ErrorKind.VALIDATION
    default_code: str = "RESERVATION_ERROR"
    retryable: bool = False

    def __init__(self, message: str, code: str | None = None, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.code    = code or self.default_code
        self.field   = field


# ═══════════════════════════════════════════════════════════════════════════════
# CONCRETE CONDITIONS
# ═══════════════════════════════════════════════════════════════════════════════

class ValidationError(ReservationError):
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class NotFoundError(ReservationError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"

    def __init__(self, entity: str = "Resource", entity_id: int | None = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} #{entity_id} not found"
        super().__init__(message)
        self.entity    = entity
        self.entity_id = entity_id


class ConflictError(ReservationError):
    kind = ErrorKind.CONFLICT
    default_code = "RESERVATION_CONFLICT"


class ForbiddenError(ReservationError):
    kind = ErrorKind.FORBIDDEN
    default_code = "FORBIDDEN"


class InvalidTransitionError(ReservationError):
    kind = ErrorKind.INVALID_TRANSITION
    default_code = "INVALID_TRANSITION"

    def __init__(self, transition: str, current, required):
        required = sorted(s.value for s in required)
        super().__init__(
            f"Cannot {transition} a reservation in status {current.value} "
            f"(requires {' or '.join(required)})"
        )
        self.transition = transition
        self.current    = current
        self.required   = required


class ContentionError(ReservationError):
    kind = ErrorKind.CONTENTION
    default_code = "CONTENTION"
    retryable = True


class DuplicateReferenceError(Exception):
    """Raised by a store when a reference number is already taken."""

    def __init__(self, reference: str):
        super().__init__(f"Reference number {reference} already exists")
        self.reference = reference
