from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, field_validator, model_validator

from fleetbook.core.errors import ValidationError


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """
    Half-open overlap test for [start1, end1) and [start2, end2).
    Windows that only touch at an endpoint do not overlap.
    """
    return start1 < end2 and end1 > start2


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimeWindow(BaseModel):
    """A half-open interval [start, end) during which a vehicle is claimed. Bounds are always UTC."""
    start: datetime
    end:   datetime

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_order(self) -> "TimeWindow":
        # Raised as the core condition, not wrapped by pydantic
        if self.end <= self.start:
            raise ValidationError("End date must be after start date", code="INVALID_DATE_RANGE", field="endDate")
        return self

    @classmethod
    def of(cls, start: datetime, end: datetime) -> "TimeWindow":
        return cls(start=start, end=end)

    def overlaps(self, other: "TimeWindow") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, instant: datetime) -> bool:
        return self.start <= as_utc(instant) < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def build_window(start: datetime, end: datetime) -> TimeWindow:
    """Window from request input; a malformed range is a core ValidationError on endDate."""
    return TimeWindow(start=start, end=end)
