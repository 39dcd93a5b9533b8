"""
Import all models here so that:
1. Alembic can auto-detect them when generating migrations
2. Relationships between models resolve correctly

Order matters: import parent tables before child tables.
"""

from fleetbook.models.user import User
from fleetbook.models.vehicle import Vehicle
from fleetbook.models.reservation import Reservation
from fleetbook.models.reservation_history import ReservationHistory
from fleetbook.models.audit_log import AuditLog

__all__ = [
    "User",
    "Vehicle",
    "Reservation",
    "ReservationHistory",
    "AuditLog",
]
