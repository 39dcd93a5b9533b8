from sqlalchemy import Column, Index, Integer, String, Text, ForeignKey, TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fleetbook.database import Base


class AuditLog(Base):
    """Append-only trail of mutating actions, written in the same transaction."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entityType", "entityId"),
    )

    id          = Column(Integer, primary_key=True)
    userId      = Column(Integer, ForeignKey("users.id"), nullable=True)   # NULL = scheduler
    action      = Column(String(50), nullable=False)     # CREATE, APPROVE, CHECK_IN, STATUS_CHANGE ...
    entityType  = Column(String(50), nullable=False)     # Reservation | Vehicle
    entityId    = Column(Integer, nullable=True)
    reference   = Column(String(40), nullable=True, index=True)
    description = Column(Text, nullable=True)
    createdAt   = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="audit_logs")

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entityType}#{self.entityId} ref={self.reference}>"
