import enum
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel

from fleetbook.core.entities import Reservation

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    CREATED     = "ReservationCreated"
    UPDATED     = "ReservationUpdated"
    APPROVED    = "ReservationApproved"
    REJECTED    = "ReservationRejected"
    CANCELLED   = "ReservationCancelled"
    CHECKED_IN  = "ReservationCheckedIn"
    CHECKED_OUT = "ReservationCheckedOut"


class DomainEvent(BaseModel):
    """A committed transition, carrying the full reservation snapshot."""
    type:        EventType
    actorId:     int
    occurredAt:  datetime
    reservation: Reservation

    model_config = {"frozen": True}


class EventPublisher(ABC):
    """Hands domain events to the notification collaborator."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """
    Delivery disabled, events are written to the log.
    Replace with a real notification channel (email / push / queue) when ready.
    """

    def publish(self, event: DomainEvent) -> None:
        r = event.reservation
        logger.info(
            f"[RESERVATION EVENT] {event.type.value} | {r.referenceNumber} | "
            f"status={r.status.value} | requester={r.requesterId} | actor={event.actorId}"
        )


class RecordingEventPublisher(EventPublisher):
    """Keeps published events in memory."""

    def __init__(self):
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[EventType]:
        return [e.type for e in self.events]
