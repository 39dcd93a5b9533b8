from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import or_

from fleetbook.config import settings
from fleetbook.core.entities import ACTIVE_STATUSES, Actor, Reservation, ReservationStatus, HistoryEntry
from fleetbook.core.events import EventPublisher, LoggingEventPublisher
from fleetbook.core.reference import ReferenceGenerator
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.store import ReservationStore
from fleetbook.core.time_window import TimeWindow, as_utc, build_window
from fleetbook.models.reservation import Reservation as ReservationRow
from fleetbook.repositories.sql_store import reservation_to_domain
from fleetbook.schemas.reservation import ReservationCreateRequest, ReservationUpdateRequest


def build_state_machine(store: ReservationStore, publisher: EventPublisher | None = None) -> ReservationStateMachine:
    """Wire a state machine with the reservation settings from the environment."""
    return ReservationStateMachine(
        store,
        publisher=publisher or LoggingEventPublisher(),
        references=ReferenceGenerator(prefix=settings.REFERENCE_PREFIX),
        checkin_early=timedelta(minutes=settings.CHECKIN_EARLY_MINUTES),
        checkin_late=timedelta(minutes=settings.CHECKIN_LATE_MINUTES),
        reference_attempts=settings.REFERENCE_MAX_ATTEMPTS,
        lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize(r: Reservation, row: ReservationRow | None = None) -> dict:
    data = {
        "id":                r.id,
        "referenceNumber":   r.referenceNumber,
        "status":            r.status.value,
        "vehicleId":         r.vehicleId,
        "requesterId":       r.requesterId,
        "driverId":          r.driverId,
        "startDate":         _iso(r.startDate),
        "endDate":           _iso(r.endDate),
        "purpose":           r.purpose,
        "destination":       r.destination,
        "passengerCount":    r.passengerCount,
        "estimatedDistance": r.estimatedDistance,
        "notes":             r.notes,
        "approval": {
            "approverId": r.approval.approverId,
            "approvedAt": _iso(r.approval.approvedAt),
            "comment":    r.approval.comment,
        } if r.approval else None,
        "rejectionReason":   r.rejectionReason,
        "cancellation": {
            "cancelledById": r.cancellation.cancelledById,
            "cancelledAt":   _iso(r.cancellation.cancelledAt),
            "reason":        r.cancellation.reason,
        } if r.cancellation else None,
        "checkInToken":      r.checkInToken,
        "checkIn": {
            "at":       _iso(r.checkIn.at),
            "odometer": r.checkIn.odometer,
            "notes":    r.checkIn.notes,
        } if r.checkIn else None,
        "checkOut": {
            "at":       _iso(r.checkOut.at),
            "odometer": r.checkOut.odometer,
            "notes":    r.checkOut.notes,
            "rating":   r.checkOut.rating,
            "feedback": r.checkOut.feedback,
        } if r.checkOut else None,
        "createdAt":         _iso(r.createdAt),
        "updatedAt":         _iso(r.updatedAt),
    }
    # List views have the ORM row at hand, so embed the related names
    if row is not None:
        data["vehicle"] = {
            "id":          row.vehicle.id,
            "name":        row.vehicle.name,
            "plateNumber": row.vehicle.plateNumber,
        }
        data["requester"] = {"id": row.requester.id, "name": row.requester.name}
        data["driver"]    = {"id": row.driver.id, "name": row.driver.name} if row.driver else None
    return data


def _serialize_history(h: HistoryEntry) -> dict:
    return {
        "previousStatus": h.previousStatus.value if h.previousStatus else None,
        "newStatus":      h.newStatus.value,
        "changedById":    h.changedById,
        "comment":        h.comment,
        "createdAt":      _iso(h.createdAt),
    }


class ReservationService:
    """
    HTTP-facing reservation operations. Transitions are delegated to the
    state machine; list and calendar reads query the database directly.
    """

    # ─── Reads ────────────────────────────────────────────────────────────────
    def list_reservations(
        self, db: Session, actor: Actor,
        page: int, limit: int,
        status: str | None, vehicle_id: int | None,
        start_date: datetime | None, end_date: datetime | None,
        search: str | None,
    ) -> tuple[list[dict], int]:
        q = db.query(ReservationRow)

        # Role-based visibility: approvers see everything, others their own or assigned trips
        if not actor.role.is_approver:
            q = q.filter(or_(
                ReservationRow.requesterId == actor.id,
                ReservationRow.driverId    == actor.id,
            ))

        if status:     q = q.filter(ReservationRow.status == status)
        if vehicle_id: q = q.filter(ReservationRow.vehicleId == vehicle_id)
        if start_date: q = q.filter(ReservationRow.endDate   > as_utc(start_date))
        if end_date:   q = q.filter(ReservationRow.startDate < as_utc(end_date))
        if search:
            kw = f"%{search}%"
            q = q.filter(or_(
                ReservationRow.referenceNumber.ilike(kw),
                ReservationRow.purpose.ilike(kw),
                ReservationRow.destination.ilike(kw),
            ))

        total = q.count()
        items = q.order_by(ReservationRow.createdAt.desc(), ReservationRow.id.desc())\
                 .offset((page - 1) * limit).limit(limit).all()
        return [_serialize(reservation_to_domain(row), row) for row in items], total

    def calendar(self, db: Session, window: TimeWindow, vehicle_id: int | None) -> list[dict]:
        """Active reservations overlapping the window, earliest first."""
        q = db.query(ReservationRow).filter(
            ReservationRow.status.in_(ACTIVE_STATUSES),
            ReservationRow.startDate < window.end,
            ReservationRow.endDate   > window.start,
        )
        if vehicle_id:
            q = q.filter(ReservationRow.vehicleId == vehicle_id)
        rows = q.order_by(ReservationRow.startDate).all()
        return [_serialize(reservation_to_domain(row), row) for row in rows]

    def upcoming(self, db: Session, actor: Actor, now: datetime, limit: int = 5) -> list[dict]:
        """The actor's next pending or approved reservations, soonest first."""
        rows = db.query(ReservationRow).filter(
            ReservationRow.requesterId == actor.id,
            ReservationRow.status.in_([ReservationStatus.PENDING, ReservationStatus.APPROVED]),
            ReservationRow.startDate > as_utc(now),
        ).order_by(ReservationRow.startDate).limit(limit).all()
        return [_serialize(reservation_to_domain(row), row) for row in rows]

    def active(self, db: Session, actor: Actor) -> list[dict]:
        """Trips currently checked in. Approvers see the whole fleet."""
        q = db.query(ReservationRow).filter(ReservationRow.status == ReservationStatus.CHECKED_IN)
        if not actor.role.is_approver:
            q = q.filter(or_(
                ReservationRow.requesterId == actor.id,
                ReservationRow.driverId    == actor.id,
            ))
        rows = q.order_by(ReservationRow.startDate).all()
        return [_serialize(reservation_to_domain(row), row) for row in rows]

    def get_reservation(self, machine: ReservationStateMachine, reservation_id: int, actor: Actor) -> dict:
        return _serialize(machine.get(actor, reservation_id))

    def get_history(self, machine: ReservationStateMachine, reservation_id: int, actor: Actor) -> list[dict]:
        return [_serialize_history(h) for h in machine.history(actor, reservation_id)]

    # ─── Transitions ──────────────────────────────────────────────────────────
    def create_reservation(self, machine: ReservationStateMachine, data: ReservationCreateRequest,
                           actor: Actor) -> dict:
        event = machine.create(
            actor, data.vehicleId, build_window(data.startDate, data.endDate), data.driverId,
            purpose=data.purpose,
            destination=data.destination,
            passenger_count=data.passengerCount,
            estimated_distance=data.estimatedDistance,
            notes=data.notes,
        )
        return _serialize(event.reservation)

    def update_reservation(self, machine: ReservationStateMachine, reservation_id: int,
                           data: ReservationUpdateRequest, actor: Actor) -> dict:
        window = None
        if data.startDate is not None or data.endDate is not None:
            current = machine.get(actor, reservation_id)
            window = build_window(data.startDate or current.startDate, data.endDate or current.endDate)
        event = machine.reschedule(
            actor, reservation_id, window, data.vehicleId, data.driverId,
            purpose=data.purpose,
            destination=data.destination,
            passenger_count=data.passengerCount,
            estimated_distance=data.estimatedDistance,
            notes=data.notes,
            # explicit "driverId": null unassigns the driver
            clear_driver="driverId" in data.model_fields_set and data.driverId is None,
        )
        return _serialize(event.reservation)

    def approve(self, machine, reservation_id: int, comment: str | None, actor: Actor) -> dict:
        return _serialize(machine.approve(actor, reservation_id, comment).reservation)

    def reject(self, machine, reservation_id: int, reason: str, actor: Actor) -> dict:
        return _serialize(machine.reject(actor, reservation_id, reason).reservation)

    def cancel(self, machine, reservation_id: int, reason: str, actor: Actor) -> dict:
        return _serialize(machine.cancel(actor, reservation_id, reason).reservation)

    def check_in(self, machine, reservation_id: int, data, actor: Actor) -> dict:
        event = machine.check_in(actor, reservation_id, data.odometer, data.notes, data.token)
        return _serialize(event.reservation)

    def check_out(self, machine, reservation_id: int, data, actor: Actor) -> dict:
        event = machine.check_out(actor, reservation_id, data.odometer, data.notes, data.rating, data.feedback)
        return _serialize(event.reservation)


reservation_service = ReservationService()
