from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


class ReservationCreateRequest(BaseModel):
    vehicleId:         int
    driverId:          Optional[int] = None
    startDate:         datetime
    endDate:           datetime
    purpose:           str = Field(max_length=2000)
    destination:       str = Field(max_length=255)
    passengerCount:    Optional[int] = None
    estimatedDistance: Optional[int] = None
    notes:             Optional[str] = None


class ReservationUpdateRequest(BaseModel):
    """Only PENDING reservations can be changed. Omitted fields are kept."""
    vehicleId:         Optional[int] = None
    driverId:          Optional[int] = None
    startDate:         Optional[datetime] = None
    endDate:           Optional[datetime] = None
    purpose:           Optional[str] = Field(default=None, max_length=2000)
    destination:       Optional[str] = Field(default=None, max_length=255)
    passengerCount:    Optional[int] = None
    estimatedDistance: Optional[int] = None
    notes:             Optional[str] = None


class ApproveRequest(BaseModel):
    comment: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def check_reason(cls, v):
        if not v.strip(): raise ValueError("Reason is required")
        return v.strip()


class CheckInRequest(BaseModel):
    odometer: int = Field(ge=0)
    notes:    Optional[str] = None
    token:    Optional[str] = None   # scanned from the vehicle QR / confirmation


class CheckOutRequest(BaseModel):
    odometer: int = Field(ge=0)
    notes:    Optional[str] = None
    rating:   Optional[int] = Field(default=None, ge=1, le=5)
    feedback: Optional[str] = None
