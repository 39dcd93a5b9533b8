from sqlalchemy import Column, Integer, String, Boolean, Enum, TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fleetbook.core.entities import RoleName
from fleetbook.database import Base


class User(Base):
    __tablename__ = "users"

    id        = Column(Integer, primary_key=True, index=True)
    name      = Column(String(150), nullable=False)
    email     = Column(String(255), unique=True, nullable=False, index=True)
    role      = Column(Enum(RoleName), nullable=False, default=RoleName.EMPLOYEE)
    isActive  = Column(Boolean, default=True, nullable=False)
    createdAt = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    # ─── Relationships ─────────────────────────────────────────────────────────
    reservations        = relationship("Reservation", foreign_keys="Reservation.requesterId",
                                       back_populates="requester")
    driven_reservations = relationship("Reservation", foreign_keys="Reservation.driverId",
                                       back_populates="driver")
    audit_logs          = relationship("AuditLog", back_populates="user")

    def __repr__(self):
        return f"<User id={self.id} email={self.email} role={self.role}>"
