from sqlalchemy import Column, Integer, Text, ForeignKey, TIMESTAMP, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fleetbook.core.entities import ReservationStatus
from fleetbook.database import Base


class ReservationHistory(Base):
    __tablename__ = "reservation_history"

    id             = Column(Integer, primary_key=True, index=True)
    reservationId  = Column(Integer, ForeignKey("reservations.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    previousStatus = Column(Enum(ReservationStatus), nullable=True)   # NULL = creation
    newStatus      = Column(Enum(ReservationStatus), nullable=False)
    changedById    = Column(Integer, ForeignKey("users.id"), nullable=True)
    comment        = Column(Text, nullable=True)
    createdAt      = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    # ─── Relationships ─────────────────────────────────────────────────────────
    reservation = relationship("Reservation", back_populates="history")
    changed_by  = relationship("User")

    def __repr__(self):
        return f"<ReservationHistory id={self.id} reservationId={self.reservationId} {self.previousStatus}->{self.newStatus}>"
