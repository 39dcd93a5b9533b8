"""
SQLAlchemy implementation of the reservation store.

A unit of work is one session / one transaction. Lock keys are taken
twice: in-process (LockRegistry) and in the database with
SELECT ... FOR UPDATE on the vehicle / driver rows, so that several API
workers serialize on the same vehicle too. PostgreSQL gets a
`lock_timeout` so a stuck lock surfaces as ContentionError.
"""
import logging
from datetime import datetime, timezone
from contextlib import contextmanager
from typing import Callable

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from fleetbook.core.entities import (
    ACTIVE_STATUSES, ApprovalRecord, CancellationRecord, CheckInRecord, CheckOutRecord,
    HistoryEntry, Reservation, ReservationStatus, User, Vehicle,
)
from fleetbook.core.errors import ContentionError, DuplicateReferenceError
from fleetbook.core.store import LockRegistry, ReservationStore, UnitOfWork
from fleetbook.core.time_window import as_utc
from fleetbook.models.reservation import Reservation as ReservationRow
from fleetbook.models.reservation_history import ReservationHistory
from fleetbook.models.user import User as UserRow
from fleetbook.models.vehicle import Vehicle as VehicleRow
from fleetbook.utils.audit import log_action

logger = logging.getLogger(__name__)

S = ReservationStatus

_LOCKABLE = {"vehicle": VehicleRow, "driver": UserRow}


# ═══════════════════════════════════════════════════════════════════════════════
# ROW <-> DOMAIN MAPPING
# ═══════════════════════════════════════════════════════════════════════════════

def _utc(value):
    return as_utc(value) if value is not None else None


def vehicle_to_domain(v: VehicleRow) -> Vehicle:
    return Vehicle(
        id=v.id,
        name=v.name,
        plateNumber=v.plateNumber,
        brand=v.brand,
        model=v.model,
        year=v.year,
        capacity=v.capacity,
        status=v.status,
        currentOdometer=v.currentOdometer,
        qrCode=v.qrCode,
    )


def user_to_domain(u: UserRow) -> User:
    return User(id=u.id, name=u.name, email=u.email, role=u.role, isActive=u.isActive)


def reservation_to_domain(r: ReservationRow) -> Reservation:
    return Reservation(
        id=r.id,
        referenceNumber=r.referenceNumber,
        vehicleId=r.vehicleId,
        requesterId=r.requesterId,
        driverId=r.driverId,
        status=r.status,
        startDate=_utc(r.startDate),
        endDate=_utc(r.endDate),
        purpose=r.purpose,
        destination=r.destination,
        passengerCount=r.passengerCount,
        estimatedDistance=r.estimatedDistance,
        notes=r.notes,
        approval=ApprovalRecord(
            approverId=r.approvedById, approvedAt=_utc(r.approvedAt), comment=r.approvalComment,
        ) if r.approvedAt else None,
        rejectionReason=r.rejectionReason,
        cancellation=CancellationRecord(
            cancelledById=r.cancelledById, cancelledAt=_utc(r.cancelledAt), reason=r.cancellationReason,
        ) if r.cancelledAt else None,
        checkInToken=r.checkInToken,
        checkIn=CheckInRecord(
            at=_utc(r.checkInAt), odometer=r.checkInOdometer, notes=r.checkInNotes,
        ) if r.checkInAt else None,
        checkOut=CheckOutRecord(
            at=_utc(r.checkOutAt), odometer=r.checkOutOdometer, notes=r.checkOutNotes,
            rating=r.rating, feedback=r.feedback,
        ) if r.checkOutAt else None,
        createdAt=_utc(r.createdAt),
        updatedAt=_utc(r.updatedAt),
    )


def _apply_reservation(row: ReservationRow, r: Reservation) -> None:
    row.referenceNumber   = r.referenceNumber
    row.vehicleId         = r.vehicleId
    row.requesterId       = r.requesterId
    row.driverId          = r.driverId
    row.status            = r.status
    row.startDate         = as_utc(r.startDate)
    row.endDate           = as_utc(r.endDate)
    row.purpose           = r.purpose
    row.destination       = r.destination
    row.passengerCount    = r.passengerCount
    row.estimatedDistance = r.estimatedDistance
    row.notes             = r.notes
    row.rejectionReason   = r.rejectionReason
    row.checkInToken      = r.checkInToken

    if r.approval:
        row.approvedById    = r.approval.approverId
        row.approvedAt      = as_utc(r.approval.approvedAt)
        row.approvalComment = r.approval.comment
    if r.cancellation:
        row.cancelledById      = r.cancellation.cancelledById
        row.cancelledAt        = as_utc(r.cancellation.cancelledAt)
        row.cancellationReason = r.cancellation.reason
    if r.checkIn:
        row.checkInAt       = as_utc(r.checkIn.at)
        row.checkInOdometer = r.checkIn.odometer
        row.checkInNotes    = r.checkIn.notes
    if r.checkOut:
        row.checkOutAt       = as_utc(r.checkOut.at)
        row.checkOutOdometer = r.checkOut.odometer
        row.checkOutNotes    = r.checkOut.notes
        row.rating           = r.checkOut.rating
        row.feedback         = r.checkOut.feedback
    if r.createdAt:
        row.createdAt = as_utc(r.createdAt)
    if r.updatedAt:
        row.updatedAt = as_utc(r.updatedAt)


def _audit_action(previous: ReservationStatus | None, current: ReservationStatus) -> str:
    if previous is None:
        return "CREATE"
    return {
        S.PENDING:     "UPDATE",
        S.APPROVED:    "APPROVE",
        S.REJECTED:    "REJECT",
        S.CANCELLED:   "CANCEL",
        S.CHECKED_IN:  "CHECK_IN",
        S.CHECKED_OUT: "CHECK_OUT",
    }[current]


# ═══════════════════════════════════════════════════════════════════════════════
# UNIT OF WORK
# ═══════════════════════════════════════════════════════════════════════════════

class SqlUnitOfWork(UnitOfWork):

    def __init__(self, db: Session):
        self.db = db

    # ─── Reads ────────────────────────────────────────────────────────────────
    def get_vehicle(self, vehicle_id):
        v = self.db.get(VehicleRow, vehicle_id)
        return vehicle_to_domain(v) if v else None

    def get_user(self, user_id):
        u = self.db.get(UserRow, user_id)
        return user_to_domain(u) if u else None

    def get_reservation(self, reservation_id):
        r = self.db.get(ReservationRow, reservation_id)
        return reservation_to_domain(r) if r else None

    def _overlapping(self, window, exclude_id):
        # Half-open overlap: existing.start < new.end AND existing.end > new.start
        q = self.db.query(ReservationRow).filter(
            ReservationRow.status.in_(ACTIVE_STATUSES),
            ReservationRow.startDate < as_utc(window.end),
            ReservationRow.endDate   > as_utc(window.start),
        )
        if exclude_id is not None:
            q = q.filter(ReservationRow.id != exclude_id)
        return q

    def find_active_overlapping(self, vehicle_id, window, exclude_id=None):
        q = self._overlapping(window, exclude_id).filter(ReservationRow.vehicleId == vehicle_id)
        return [reservation_to_domain(r) for r in q.order_by(ReservationRow.startDate).all()]

    def find_driver_overlapping(self, driver_id, window, exclude_id=None):
        q = self._overlapping(window, exclude_id).filter(ReservationRow.driverId == driver_id)
        return [reservation_to_domain(r) for r in q.order_by(ReservationRow.startDate).all()]

    def find_reservations(self, statuses=None, vehicle_id=None, window=None):
        q = self.db.query(ReservationRow)
        if statuses is not None:
            q = q.filter(ReservationRow.status.in_(list(statuses)))
        if vehicle_id is not None:
            q = q.filter(ReservationRow.vehicleId == vehicle_id)
        if window is not None:
            q = q.filter(ReservationRow.startDate < as_utc(window.end),
                         ReservationRow.endDate   > as_utc(window.start))
        return [reservation_to_domain(r) for r in q.order_by(ReservationRow.startDate).all()]

    def list_vehicles(self, ids=None):
        q = self.db.query(VehicleRow)
        if ids is not None:
            q = q.filter(VehicleRow.id.in_(list(ids)))
        return [vehicle_to_domain(v) for v in q.order_by(VehicleRow.id).all()]

    def list_users(self, role=None, active_only=True):
        q = self.db.query(UserRow)
        if role is not None:
            q = q.filter(UserRow.role == role)
        if active_only:
            q = q.filter(UserRow.isActive == True)  # noqa: E712
        return [user_to_domain(u) for u in q.order_by(UserRow.id).all()]

    def list_history(self, reservation_id):
        rows = self.db.query(ReservationHistory)\
                      .filter(ReservationHistory.reservationId == reservation_id)\
                      .order_by(ReservationHistory.id.asc()).all()
        return [HistoryEntry(
            reservationId=h.reservationId,
            previousStatus=h.previousStatus,
            newStatus=h.newStatus,
            changedById=h.changedById,
            comment=h.comment,
            createdAt=_utc(h.createdAt),
        ) for h in rows]

    # ─── Writes ───────────────────────────────────────────────────────────────
    def add_reservation(self, reservation):
        ref = reservation.referenceNumber
        taken = self.db.query(ReservationRow.id).filter(ReservationRow.referenceNumber == ref).first()
        if taken:
            raise DuplicateReferenceError(ref)

        row = ReservationRow()
        _apply_reservation(row, reservation)
        try:
            # Savepoint so a collision does not poison the surrounding transaction
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError as e:
            if "referenceNumber" in str(e.orig):
                raise DuplicateReferenceError(ref) from e
            raise
        return reservation.model_copy(update={"id": row.id})

    def save_reservation(self, reservation):
        row = self.db.get(ReservationRow, reservation.id)
        _apply_reservation(row, reservation)
        self.db.flush()
        return reservation

    def add_vehicle(self, vehicle):
        row = VehicleRow(**vehicle.model_dump(exclude={"id"}))
        self.db.add(row)
        self.db.flush()
        log_action(self.db, None, "CREATE", "Vehicle", row.id,
                   f"Registered vehicle {row.plateNumber} ({row.brand} {row.model})")
        return vehicle_to_domain(row)

    def save_vehicle(self, vehicle):
        row = self.db.get(VehicleRow, vehicle.id)
        old_status = row.status
        for field, value in vehicle.model_dump(exclude={"id"}).items():
            setattr(row, field, value)
        if old_status != vehicle.status:
            log_action(self.db, None, "STATUS_CHANGE", "Vehicle", row.id,
                       f"Status changed {old_status.value} -> {vehicle.status.value}")
        self.db.flush()
        return vehicle_to_domain(row)

    def record_transition(self, reservation, previous, actor_id, comment=None):
        self.db.add(ReservationHistory(
            reservationId=reservation.id,
            previousStatus=previous,
            newStatus=reservation.status,
            changedById=actor_id,
            comment=comment,
            createdAt=_utc(reservation.updatedAt or datetime.now(timezone.utc)),
        ))
        description = f"Reservation {reservation.referenceNumber} " + (
            f"{previous.value} -> {reservation.status.value}" if previous else "created"
        )
        if comment:
            description += f" | {comment}"
        log_action(self.db, actor_id, _audit_action(previous, reservation.status), "Reservation",
                   reservation.id, description, reference=reservation.referenceNumber)


# ═══════════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════════

def _is_lock_timeout(exc: OperationalError) -> bool:
    # 55P03 = lock_not_available (PostgreSQL); SQLite reports a busy database
    return getattr(exc.orig, "pgcode", None) == "55P03" or "database is locked" in str(exc.orig)


class SqlReservationStore(ReservationStore):

    def __init__(self, session_factory: Callable[[], Session], locks: LockRegistry | None = None):
        self.session_factory = session_factory
        self.locks = locks or LockRegistry()

    @contextmanager
    def unit_of_work(self, lock_keys=(), timeout=5.0):
        keys = sorted(set(lock_keys))
        with self.locks.hold(keys, timeout):
            db = self.session_factory()
            try:
                self._lock_rows(db, keys, timeout)
                yield SqlUnitOfWork(db)
                db.commit()
            except OperationalError as e:
                db.rollback()
                if _is_lock_timeout(e):
                    raise ContentionError(f"Database lock not acquired within {timeout}s, retry the request") from e
                raise
            except BaseException:
                db.rollback()
                raise
            finally:
                db.close()

    def _lock_rows(self, db: Session, keys, timeout: float) -> None:
        if not keys:
            return
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))
        for kind, entity_id in keys:
            model = _LOCKABLE[kind]
            db.query(model.id).filter(model.id == entity_id).with_for_update().first()
