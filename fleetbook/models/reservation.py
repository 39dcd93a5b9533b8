from sqlalchemy import (
    Column, Integer, String, Text, ForeignKey, TIMESTAMP, Enum, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fleetbook.core.entities import ReservationStatus
from fleetbook.database import Base


class Reservation(Base):
    __tablename__ = "reservations"

    id                = Column(Integer, primary_key=True, index=True)
    referenceNumber   = Column(String(40), unique=True, nullable=False)
    vehicleId         = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    requesterId       = Column(Integer, ForeignKey("users.id"), nullable=False)
    driverId          = Column(Integer, ForeignKey("users.id"), nullable=True)
    status            = Column(Enum(ReservationStatus), default=ReservationStatus.PENDING,
                               nullable=False, index=True)
    startDate         = Column(TIMESTAMP(timezone=True), nullable=False)
    endDate           = Column(TIMESTAMP(timezone=True), nullable=False)
    purpose           = Column(Text, nullable=False)
    destination       = Column(String(255), nullable=False)
    passengerCount    = Column(Integer, nullable=True)
    estimatedDistance = Column(Integer, nullable=True)
    notes             = Column(Text, nullable=True)

    # Approval / rejection
    approvedById      = Column(Integer, ForeignKey("users.id"), nullable=True)
    approvedAt        = Column(TIMESTAMP(timezone=True), nullable=True)
    approvalComment   = Column(Text, nullable=True)
    rejectionReason   = Column(Text, nullable=True)

    # Cancellation
    cancelledById      = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelledAt        = Column(TIMESTAMP(timezone=True), nullable=True)
    cancellationReason = Column(Text, nullable=True)

    # Usage tracking
    checkInToken     = Column(String(64), nullable=True)
    checkInAt        = Column(TIMESTAMP(timezone=True), nullable=True)
    checkInOdometer  = Column(Integer, nullable=True)
    checkInNotes     = Column(Text, nullable=True)
    checkOutAt       = Column(TIMESTAMP(timezone=True), nullable=True)
    checkOutOdometer = Column(Integer, nullable=True)
    checkOutNotes    = Column(Text, nullable=True)
    rating           = Column(Integer, nullable=True)   # 1-5
    feedback         = Column(Text, nullable=True)

    createdAt = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updatedAt = Column(TIMESTAMP(timezone=True), server_default=func.now(),
                       onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('"endDate" > "startDate"', name="chk_reservation_window"),
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="chk_reservation_rating"),
        Index("ix_reservations_vehicle_window", "vehicleId", "status", "startDate", "endDate"),
    )

    # ─── Relationships ─────────────────────────────────────────────────────────
    vehicle     = relationship("Vehicle", back_populates="reservations")
    requester   = relationship("User", foreign_keys=[requesterId], back_populates="reservations")
    driver      = relationship("User", foreign_keys=[driverId], back_populates="driven_reservations")
    approved_by = relationship("User", foreign_keys=[approvedById])
    history     = relationship("ReservationHistory", back_populates="reservation",
                               cascade="all, delete-orphan", order_by="ReservationHistory.id")

    def __repr__(self):
        return f"<Reservation id={self.id} ref={self.referenceNumber} status={self.status}>"
