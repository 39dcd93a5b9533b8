"""
Reservation state machine.

    PENDING -> APPROVED -> CHECKED_IN -> CHECKED_OUT
    PENDING -> REJECTED
    PENDING | APPROVED -> CANCELLED

Every operation checks its inputs and the current status, then asks the
policy gate, then applies all effects (reservation, vehicle projection,
history) inside one locked unit of work. The domain event is published
only after the unit of work has committed.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from fleetbook.core.availability import AvailabilityResolver
from fleetbook.core.entities import (
    Actor, ApprovalRecord, CancellationRecord, CheckInRecord, CheckOutRecord,
    HistoryEntry, Reservation, ReservationStatus, RoleName, Vehicle, VehicleStatus,
)
from fleetbook.core.errors import (
    ConflictError, ContentionError, DuplicateReferenceError, ForbiddenError,
    InvalidTransitionError, NotFoundError, ValidationError,
)
from fleetbook.core.events import DomainEvent, EventPublisher, EventType
from fleetbook.core.policy import Transition, authorize
from fleetbook.core.reference import ReferenceGenerator
from fleetbook.core.store import LockKey, ReservationStore, UnitOfWork, driver_key, vehicle_key
from fleetbook.core.time_window import TimeWindow

logger = logging.getLogger(__name__)

S = ReservationStatus

# transition -> (statuses it may start from, status it ends in)
TRANSITIONS: dict[Transition, tuple[frozenset, ReservationStatus]] = {
    Transition.RESCHEDULE: (frozenset({S.PENDING}),             S.PENDING),
    Transition.APPROVE:    (frozenset({S.PENDING}),             S.APPROVED),
    Transition.REJECT:     (frozenset({S.PENDING}),             S.REJECTED),
    Transition.CANCEL:     (frozenset({S.PENDING, S.APPROVED}), S.CANCELLED),
    Transition.CHECK_IN:   (frozenset({S.APPROVED}),            S.CHECKED_IN),
    Transition.CHECK_OUT:  (frozenset({S.CHECKED_IN}),          S.CHECKED_OUT),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _instant(at: datetime) -> TimeWindow:
    return TimeWindow(start=at, end=at + timedelta(microseconds=1))


def _lock_keys(reservation: Reservation) -> set[LockKey]:
    keys = {vehicle_key(reservation.vehicleId)}
    if reservation.driverId is not None:
        keys.add(driver_key(reservation.driverId))
    return keys


def _required_text(value: str | None, field: str, label: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{label} is required", code="REASON_REQUIRED", field=field)
    return value.strip()


def _check_odometer(value: int) -> None:
    if value < 0:
        raise ValidationError("Odometer reading cannot be negative", code="INVALID_ODOMETER", field="odometer")


class ReservationStateMachine:

    def __init__(
        self,
        store: ReservationStore,
        publisher: EventPublisher | None = None,
        references: ReferenceGenerator | None = None,
        clock: Callable[[], datetime] = _utcnow,
        checkin_early: timedelta = timedelta(minutes=30),
        checkin_late: timedelta = timedelta(minutes=120),
        reference_attempts: int = 5,
        lock_timeout: float = 5.0,
    ):
        self.store              = store
        self.publisher          = publisher
        self.references         = references or ReferenceGenerator()
        self.clock              = clock
        self.checkin_early      = checkin_early
        self.checkin_late       = checkin_late
        self.reference_attempts = reference_attempts
        self.lock_timeout       = lock_timeout

    # ═══════════════════════════════════════════════════════════════════════════
    # TRANSITIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def create(
        self,
        actor: Actor,
        vehicle_id: int,
        window: TimeWindow,
        driver_id: int | None = None,
        *,
        purpose: str,
        destination: str,
        passenger_count: int | None = None,
        estimated_distance: int | None = None,
        notes: str | None = None,
    ) -> DomainEvent:
        now = self.clock()
        purpose     = _required_text(purpose, "purpose", "Purpose")
        destination = _required_text(destination, "destination", "Destination")
        self._check_window_start(window, now)
        self._check_metadata(passenger_count, estimated_distance)
        authorize(actor, None, Transition.CREATE)

        keys = {vehicle_key(vehicle_id)}
        if driver_id is not None:
            keys.add(driver_key(driver_id))

        with self._unit_of_work(keys) as uow:
            vehicle = self._bookable_vehicle(uow, vehicle_id)
            if driver_id is not None:
                self._require_driver(uow, driver_id)
            self._check_capacity(vehicle, passenger_count)
            self._check_available(uow, vehicle_id, window, driver_id)

            draft = Reservation(
                vehicleId=vehicle_id,
                requesterId=actor.id,
                driverId=driver_id,
                status=S.PENDING,
                startDate=window.start,
                endDate=window.end,
                purpose=purpose,
                destination=destination,
                passengerCount=passenger_count,
                estimatedDistance=estimated_distance,
                notes=notes,
                createdAt=now,
                updatedAt=now,
            )
            reservation = self._insert_with_reference(uow, draft)
            uow.record_transition(reservation, None, actor.id, "Reservation created")

        return self._emit(EventType.CREATED, actor, reservation)

    def reschedule(
        self,
        actor: Actor,
        reservation_id: int,
        window: TimeWindow | None = None,
        vehicle_id: int | None = None,
        driver_id: int | None = None,
        *,
        purpose: str | None = None,
        destination: str | None = None,
        passenger_count: int | None = None,
        estimated_distance: int | None = None,
        notes: str | None = None,
        clear_driver: bool = False,
    ) -> DomainEvent:
        """Change a PENDING reservation. Window, vehicle and driver are re-checked.

        A None driver_id keeps the current driver; clear_driver removes it.
        """
        now = self.clock()
        if window is not None:
            self._check_window_start(window, now)
        self._check_metadata(passenger_count, estimated_distance)

        extra = set()
        if vehicle_id is not None:
            extra.add(vehicle_key(vehicle_id))
        if driver_id is not None and not clear_driver:
            extra.add(driver_key(driver_id))

        with self._locked_reservation(reservation_id, extra) as (uow, r):
            self._require_status(r, Transition.RESCHEDULE)
            authorize(actor, r, Transition.RESCHEDULE)

            target_window  = window or r.window
            target_vehicle = vehicle_id if vehicle_id is not None else r.vehicleId
            if clear_driver:
                target_driver = None
            else:
                target_driver = driver_id if driver_id is not None else r.driverId

            vehicle = self._bookable_vehicle(uow, target_vehicle)
            if driver_id is not None and not clear_driver:
                self._require_driver(uow, driver_id)
            self._check_capacity(vehicle, passenger_count if passenger_count is not None else r.passengerCount)
            self._check_available(uow, target_vehicle, target_window, target_driver, exclude_id=r.id)

            changes = {
                "vehicleId": target_vehicle,
                "driverId":  target_driver,
                "startDate": target_window.start,
                "endDate":   target_window.end,
                "updatedAt": now,
            }
            if purpose is not None:
                changes["purpose"] = _required_text(purpose, "purpose", "Purpose")
            if destination is not None:
                changes["destination"] = _required_text(destination, "destination", "Destination")
            if passenger_count is not None:
                changes["passengerCount"] = passenger_count
            if estimated_distance is not None:
                changes["estimatedDistance"] = estimated_distance
            if notes is not None:
                changes["notes"] = notes

            updated = uow.save_reservation(r.model_copy(update=changes))
            uow.record_transition(updated, r.status, actor.id, "Reservation updated")

        return self._emit(EventType.UPDATED, actor, updated)

    def approve(self, actor: Actor, reservation_id: int, comment: str | None = None) -> DomainEvent:
        with self._locked_reservation(reservation_id) as (uow, r):
            self._require_status(r, Transition.APPROVE)
            authorize(actor, r, Transition.APPROVE)

            # Another request may have claimed the slot since this one was created
            self._bookable_vehicle(uow, r.vehicleId)
            self._check_available(uow, r.vehicleId, r.window, r.driverId, exclude_id=r.id)

            now = self.clock()
            updated = uow.save_reservation(r.model_copy(update={
                "status":       S.APPROVED,
                "approval":     ApprovalRecord(approverId=actor.id, approvedAt=now, comment=comment),
                "checkInToken": self.references.checkin_token(),
                "updatedAt":    now,
            }))

            vehicle = uow.require_vehicle(r.vehicleId)
            if updated.window.contains(now) and vehicle.status == VehicleStatus.AVAILABLE:
                uow.save_vehicle(vehicle.model_copy(update={"status": VehicleStatus.RESERVED}))
            uow.record_transition(updated, r.status, actor.id, comment)

        return self._emit(EventType.APPROVED, actor, updated)

    def reject(self, actor: Actor, reservation_id: int, reason: str) -> DomainEvent:
        reason = _required_text(reason, "reason", "Rejection reason")

        with self._locked_reservation(reservation_id) as (uow, r):
            self._require_status(r, Transition.REJECT)
            authorize(actor, r, Transition.REJECT)

            updated = uow.save_reservation(r.model_copy(update={
                "status":          S.REJECTED,
                "rejectionReason": reason,
                "updatedAt":       self.clock(),
            }))
            uow.record_transition(updated, r.status, actor.id, reason)

        return self._emit(EventType.REJECTED, actor, updated)

    def cancel(self, actor: Actor, reservation_id: int, reason: str) -> DomainEvent:
        reason = _required_text(reason, "reason", "Cancellation reason")

        with self._locked_reservation(reservation_id) as (uow, r):
            self._require_status(r, Transition.CANCEL)
            authorize(actor, r, Transition.CANCEL)

            now = self.clock()
            updated = uow.save_reservation(r.model_copy(update={
                "status":       S.CANCELLED,
                "cancellation": CancellationRecord(cancelledById=actor.id, cancelledAt=now, reason=reason),
                "updatedAt":    now,
            }))
            self._release_hold(uow, updated, now)
            uow.record_transition(updated, r.status, actor.id, reason)

        return self._emit(EventType.CANCELLED, actor, updated)

    def check_in(
        self,
        actor: Actor,
        reservation_id: int,
        odometer: int,
        notes: str | None = None,
        token: str | None = None,
    ) -> DomainEvent:
        _check_odometer(odometer)

        with self._locked_reservation(reservation_id) as (uow, r):
            self._require_status(r, Transition.CHECK_IN)
            authorize(actor, r, Transition.CHECK_IN)
            if token is not None and token != r.checkInToken:
                raise ForbiddenError("Check-in token does not match this reservation", code="CHECKIN_TOKEN_MISMATCH")

            now = self.clock()
            earliest = r.startDate - self.checkin_early
            latest   = min(r.startDate + self.checkin_late, r.endDate)
            if not (earliest <= now < latest):
                raise ValidationError(
                    f"Check-in is only allowed between {earliest.isoformat()} and {latest.isoformat()}",
                    code="CHECKIN_WINDOW",
                )

            vehicle = uow.require_vehicle(r.vehicleId)
            if not vehicle.accepts_reservations:
                raise ConflictError(f"Vehicle is currently {vehicle.status.value}", code="VEHICLE_UNAVAILABLE")
            if vehicle.status == VehicleStatus.IN_USE:
                raise ConflictError("Vehicle has not been returned from its previous trip", code="VEHICLE_IN_USE")
            if odometer < vehicle.currentOdometer:
                raise ValidationError(
                    f"Odometer reading {odometer} is below the vehicle's last reading {vehicle.currentOdometer}",
                    code="INVALID_ODOMETER", field="odometer",
                )

            updated = uow.save_reservation(r.model_copy(update={
                "status":    S.CHECKED_IN,
                "checkIn":   CheckInRecord(at=now, odometer=odometer, notes=notes),
                "updatedAt": now,
            }))
            uow.save_vehicle(vehicle.model_copy(update={"status": VehicleStatus.IN_USE}))
            uow.record_transition(updated, r.status, actor.id, f"Check-in at {odometer} km")

        return self._emit(EventType.CHECKED_IN, actor, updated)

    def check_out(
        self,
        actor: Actor,
        reservation_id: int,
        odometer: int,
        notes: str | None = None,
        rating: int | None = None,
        feedback: str | None = None,
    ) -> DomainEvent:
        _check_odometer(odometer)
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", code="INVALID_RATING", field="rating")

        with self._locked_reservation(reservation_id) as (uow, r):
            self._require_status(r, Transition.CHECK_OUT)
            authorize(actor, r, Transition.CHECK_OUT)

            start_odometer = r.checkIn.odometer if r.checkIn else 0
            if odometer < start_odometer:
                raise ValidationError(
                    f"Check-out odometer {odometer} is below check-in reading {start_odometer}",
                    code="INVALID_ODOMETER", field="odometer",
                )

            now = self.clock()
            updated = uow.save_reservation(r.model_copy(update={
                "status":    S.CHECKED_OUT,
                "checkOut":  CheckOutRecord(at=now, odometer=odometer, notes=notes,
                                            rating=rating, feedback=feedback),
                "updatedAt": now,
            }))
            vehicle = uow.require_vehicle(r.vehicleId)
            uow.save_vehicle(vehicle.model_copy(update={
                "status":          self._idle_status(uow, vehicle.id, now, exclude_id=r.id),
                "currentOdometer": odometer,
            }))
            uow.record_transition(
                updated, r.status, actor.id,
                f"Check-out at {odometer} km. Distance: {odometer - start_odometer} km",
            )

        return self._emit(EventType.CHECKED_OUT, actor, updated)

    # ─── Scheduler helper (called by cron / background task) ─────────────────
    def refresh_vehicle_statuses(self) -> int:
        """
        Project APPROVED reservations onto vehicle status: RESERVED while an
        approved window covers now, AVAILABLE otherwise. Vehicles that are in
        use or blocked by maintenance are left alone. Returns count updated.
        """
        with self.store.unit_of_work() as uow:
            vehicle_ids = [v.id for v in uow.list_vehicles()]

        changed = 0
        for vehicle_id in vehicle_ids:
            with self._unit_of_work({vehicle_key(vehicle_id)}) as uow:
                vehicle = uow.get_vehicle(vehicle_id)
                if vehicle is None or vehicle.status not in (VehicleStatus.AVAILABLE, VehicleStatus.RESERVED):
                    continue
                covering = uow.find_reservations([S.APPROVED], vehicle_id, _instant(self.clock()))
                target = VehicleStatus.RESERVED if covering else VehicleStatus.AVAILABLE
                if vehicle.status != target:
                    uow.save_vehicle(vehicle.model_copy(update={"status": target}))
                    changed += 1
        if changed:
            logger.info(f"Vehicle status refresh updated {changed} vehicle(s)")
        return changed

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def get(self, actor: Actor, reservation_id: int) -> Reservation:
        with self.store.unit_of_work() as uow:
            r = uow.require_reservation(reservation_id)
        authorize(actor, r, Transition.VIEW)
        return r

    def history(self, actor: Actor, reservation_id: int) -> list[HistoryEntry]:
        with self.store.unit_of_work() as uow:
            r = uow.require_reservation(reservation_id)
            authorize(actor, r, Transition.VIEW)
            return uow.list_history(reservation_id)

    def available_vehicles(
        self,
        window: TimeWindow,
        candidate_ids: Iterable[int] | None = None,
        require_driver: bool = False,
    ) -> set[int]:
        with self.store.unit_of_work() as uow:
            return AvailabilityResolver(uow).find_available_vehicles(candidate_ids, window, require_driver)

    def available_drivers(self, window: TimeWindow) -> set[int]:
        with self.store.unit_of_work() as uow:
            return AvailabilityResolver(uow).find_available_drivers(window)

    # ═══════════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════════

    @contextmanager
    def _unit_of_work(self, keys: Iterable[LockKey]):
        try:
            with self.store.unit_of_work(keys, timeout=self.lock_timeout) as uow:
                yield uow
        except ContentionError as e:
            logger.warning(f"Lock contention: {e.message}")
            raise

    @contextmanager
    def _locked_reservation(self, reservation_id: int, extra_keys: Iterable[LockKey] = ()):
        """
        Yield (uow, reservation) while holding the locks of the reservation's
        vehicle and driver. The reservation is re-read under the lock; if it
        moved to another vehicle or driver in between, the locks are retaken.
        """
        extra_keys = set(extra_keys)
        for _ in range(3):
            with self.store.unit_of_work() as uow:
                keys = _lock_keys(uow.require_reservation(reservation_id)) | extra_keys
            with self._unit_of_work(keys) as uow:
                reservation = uow.require_reservation(reservation_id)
                if _lock_keys(reservation) <= keys:
                    yield uow, reservation
                    return
        raise ContentionError("Reservation changed while acquiring locks, retry the request")

    def _require_status(self, reservation: Reservation, transition: Transition) -> None:
        allowed, _ = TRANSITIONS[transition]
        if reservation.status not in allowed:
            raise InvalidTransitionError(transition.value, reservation.status, allowed)

    def _check_window_start(self, window: TimeWindow, now: datetime) -> None:
        if window.start < now:
            raise ValidationError("Start date cannot be in the past", code="START_IN_PAST", field="startDate")

    def _check_metadata(self, passenger_count: int | None, estimated_distance: int | None) -> None:
        if passenger_count is not None and passenger_count < 1:
            raise ValidationError("Passenger count must be at least 1", field="passengerCount")
        if estimated_distance is not None and estimated_distance <= 0:
            raise ValidationError("Estimated distance must be positive", field="estimatedDistance")

    def _check_capacity(self, vehicle: Vehicle, passenger_count: int | None) -> None:
        if passenger_count is not None and passenger_count > vehicle.capacity:
            raise ValidationError(
                f"Vehicle seats {vehicle.capacity} passengers, {passenger_count} requested",
                field="passengerCount",
            )

    def _bookable_vehicle(self, uow: UnitOfWork, vehicle_id: int) -> Vehicle:
        vehicle = uow.require_vehicle(vehicle_id)
        if not vehicle.accepts_reservations:
            raise ConflictError(f"Vehicle is currently {vehicle.status.value}", code="VEHICLE_UNAVAILABLE")
        return vehicle

    def _require_driver(self, uow: UnitOfWork, driver_id: int) -> None:
        driver = uow.get_user(driver_id)
        if driver is None or not driver.isActive or driver.role != RoleName.DRIVER:
            raise NotFoundError("Driver", driver_id)

    def _check_available(
        self,
        uow: UnitOfWork,
        vehicle_id: int,
        window: TimeWindow,
        driver_id: int | None,
        exclude_id: int | None = None,
    ) -> None:
        resolver = AvailabilityResolver(uow)
        if resolver.has_conflict(vehicle_id, window, exclude_id):
            raise ConflictError("Vehicle is not available for the selected dates", code="VEHICLE_CONFLICT")
        if driver_id is not None and resolver.has_driver_conflict(driver_id, window, exclude_id):
            raise ConflictError("Driver is already assigned during the selected dates", code="DRIVER_CONFLICT")

    def _insert_with_reference(self, uow: UnitOfWork, draft: Reservation) -> Reservation:
        for attempt in range(1, self.reference_attempts + 1):
            candidate = draft.model_copy(update={"referenceNumber": self.references.reservation_reference()})
            try:
                return uow.add_reservation(candidate)
            except DuplicateReferenceError as e:
                logger.warning(f"Reference collision on {e.reference} (attempt {attempt}/{self.reference_attempts})")
        raise ConflictError(
            f"Could not allocate a unique reference number after {self.reference_attempts} attempts",
            code="REFERENCE_COLLISION",
        )

    def _idle_status(self, uow: UnitOfWork, vehicle_id: int, now: datetime, exclude_id: int) -> VehicleStatus:
        """RESERVED while another approved reservation covers now, AVAILABLE otherwise."""
        covering = [
            r for r in uow.find_reservations([S.APPROVED], vehicle_id, _instant(now))
            if r.id != exclude_id
        ]
        return VehicleStatus.RESERVED if covering else VehicleStatus.AVAILABLE

    def _release_hold(self, uow: UnitOfWork, reservation: Reservation, now: datetime) -> None:
        vehicle = uow.require_vehicle(reservation.vehicleId)
        if vehicle.status != VehicleStatus.RESERVED:
            return
        if self._idle_status(uow, vehicle.id, now, exclude_id=reservation.id) == VehicleStatus.AVAILABLE:
            uow.save_vehicle(vehicle.model_copy(update={"status": VehicleStatus.AVAILABLE}))

    def _emit(self, event_type: EventType, actor: Actor, reservation: Reservation) -> DomainEvent:
        event = DomainEvent(type=event_type, actorId=actor.id, occurredAt=self.clock(), reservation=reservation)
        logger.info(f"{event_type.value}: {reservation.referenceNumber} by user #{actor.id}")
        if self.publisher is not None:
            try:
                self.publisher.publish(event)
            except Exception:
                # The transition is committed; delivery is the notifier's concern
                logger.exception(f"Failed to publish {event_type.value} for {reservation.referenceNumber}")
        return event
