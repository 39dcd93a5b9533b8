import enum
from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from fleetbook.core.time_window import TimeWindow


class RoleName(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    DRIVER   = "DRIVER"
    MANAGER  = "MANAGER"
    ADMIN    = "ADMIN"

    @property
    def is_approver(self) -> bool:
        return self in APPROVER_ROLES


APPROVER_ROLES  = frozenset({RoleName.MANAGER, RoleName.ADMIN})
REQUESTER_ROLES = frozenset(RoleName)


class VehicleStatus(str, enum.Enum):
    AVAILABLE      = "AVAILABLE"
    RESERVED       = "RESERVED"
    IN_USE         = "IN_USE"
    MAINTENANCE    = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


# Set by the maintenance workflow; such vehicles take no new reservations
BLOCKED_VEHICLE_STATUSES = frozenset({VehicleStatus.MAINTENANCE, VehicleStatus.OUT_OF_SERVICE})


class ReservationStatus(str, enum.Enum):
    PENDING     = "PENDING"
    APPROVED    = "APPROVED"
    REJECTED    = "REJECTED"
    CANCELLED   = "CANCELLED"
    CHECKED_IN  = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Statuses that hold a claim on the vehicle's calendar (PENDING is a soft hold)
ACTIVE_STATUSES   = frozenset({ReservationStatus.PENDING, ReservationStatus.APPROVED,
                               ReservationStatus.CHECKED_IN})
TERMINAL_STATUSES = frozenset({ReservationStatus.REJECTED, ReservationStatus.CANCELLED,
                               ReservationStatus.CHECKED_OUT})


# ─── Actor ────────────────────────────────────────────────────────────────────
class Actor(BaseModel):
    id:   int
    role: RoleName

    model_config = {"frozen": True}


# ─── Users & Vehicles ─────────────────────────────────────────────────────────
class User(BaseModel):
    id:       int
    name:     str
    email:    str
    role:     RoleName
    isActive: bool = True


class Vehicle(BaseModel):
    id:              int | None = None
    name:            str
    plateNumber:     str
    brand:           str
    model:           str
    year:            int
    capacity:        int = 4
    status:          VehicleStatus = VehicleStatus.AVAILABLE
    currentOdometer: int = 0
    qrCode:          str | None = None

    @property
    def accepts_reservations(self) -> bool:
        return self.status not in BLOCKED_VEHICLE_STATUSES


# ─── Lifecycle records ────────────────────────────────────────────────────────
class ApprovalRecord(BaseModel):
    approverId: int
    approvedAt: datetime
    comment:    str | None = None


class CancellationRecord(BaseModel):
    cancelledById: int
    cancelledAt:   datetime
    reason:        str


class CheckInRecord(BaseModel):
    at:       datetime
    odometer: int
    notes:    str | None = None


class CheckOutRecord(BaseModel):
    at:       datetime
    odometer: int
    notes:    str | None = None
    rating:   int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None


# ─── Reservation ──────────────────────────────────────────────────────────────
class Reservation(BaseModel):
    id:                int | None = None
    referenceNumber:   str | None = None
    vehicleId:         int
    requesterId:       int
    driverId:          int | None = None
    status:            ReservationStatus = ReservationStatus.PENDING
    startDate:         datetime
    endDate:           datetime
    purpose:           str
    destination:       str
    passengerCount:    int | None = None
    estimatedDistance: int | None = None
    notes:             str | None = None
    approval:          ApprovalRecord | None = None
    rejectionReason:   str | None = None
    cancellation:      CancellationRecord | None = None
    checkInToken:      str | None = None
    checkIn:           CheckInRecord | None = None
    checkOut:          CheckOutRecord | None = None
    createdAt:         datetime | None = None
    updatedAt:         datetime | None = None

    @model_validator(mode="after")
    def check_dates(self) -> "Reservation":
        if self.endDate <= self.startDate:
            raise ValueError("endDate must be after startDate")
        return self

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start=self.startDate, end=self.endDate)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self):
        return f"<Reservation id={self.id} ref={self.referenceNumber} status={self.status.value}>"


class HistoryEntry(BaseModel):
    reservationId:  int
    previousStatus: ReservationStatus | None
    newStatus:      ReservationStatus
    changedById:    int | None
    comment:        str | None = None
    createdAt:      datetime
