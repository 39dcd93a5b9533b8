from sqlalchemy import Column, Integer, String, Enum, TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fleetbook.core.entities import VehicleStatus
from fleetbook.database import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    id              = Column(Integer, primary_key=True, index=True)
    name            = Column(String(200), nullable=False)
    plateNumber     = Column(String(20), unique=True, nullable=False, index=True)
    brand           = Column(String(100), nullable=False)
    model           = Column(String(100), nullable=False)
    year            = Column(Integer, nullable=False)
    capacity        = Column(Integer, default=4, nullable=False)
    status          = Column(Enum(VehicleStatus), default=VehicleStatus.AVAILABLE, nullable=False, index=True)
    currentOdometer = Column(Integer, default=0, nullable=False)
    qrCode          = Column(String(40), unique=True, nullable=True)
    createdAt       = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updatedAt       = Column(TIMESTAMP(timezone=True), server_default=func.now(),
                             onupdate=func.now(), nullable=False)

    # ─── Relationships ─────────────────────────────────────────────────────────
    reservations = relationship("Reservation", back_populates="vehicle")

    def __repr__(self):
        return f"<Vehicle id={self.id} plate={self.plateNumber} status={self.status}>"
