from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional


class VehicleCreateRequest(BaseModel):
    name:            str = Field(min_length=1, max_length=200)
    plateNumber:     str = Field(max_length=20)
    brand:           str = Field(max_length=100)
    model:           str = Field(max_length=100)
    year:            int = Field(ge=1900, le=2100)
    currentOdometer: int = Field(default=0, ge=0)
    capacity:        int = Field(default=4, ge=1, le=60)   # passengers

    @field_validator("plateNumber")
    @classmethod
    def normalize_plate(cls, v):
        # "b 1234  cd" and "B 1234 CD" are the same plate
        plate = " ".join(v.split()).upper()
        if not plate: raise ValueError("Plate number cannot be empty")
        return plate


class VehicleStatusRequest(BaseModel):
    # RESERVED and IN_USE follow the reservations, they are never set by hand
    status: Literal["AVAILABLE", "MAINTENANCE", "OUT_OF_SERVICE"]
    reason: Optional[str] = Field(default=None, max_length=500)
