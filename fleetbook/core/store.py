"""
Storage interface for the reservation core.

Every mutating operation runs inside `ReservationStore.unit_of_work(...)`,
which holds the given lock keys for its whole duration and commits on a
clean exit or rolls back on any exception. Lock keys look like
("vehicle", 3) or ("driver", 12).
"""
import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

from fleetbook.core.entities import (
    HistoryEntry, Reservation, ReservationStatus, RoleName, User, Vehicle,
)
from fleetbook.core.errors import ContentionError, DuplicateReferenceError, NotFoundError
from fleetbook.core.time_window import TimeWindow

LockKey = tuple[str, int]


def vehicle_key(vehicle_id: int) -> LockKey:
    return ("vehicle", vehicle_id)


def driver_key(driver_id: int) -> LockKey:
    return ("driver", driver_id)


class LockRegistry:
    """Process-local locks keyed by resource, acquired in sorted order."""

    def __init__(self):
        self._locks: dict[LockKey, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, keys: Iterable[LockKey], timeout: float) -> Iterator[None]:
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=timeout):
                    raise ContentionError(
                        f"Timed out after {timeout}s waiting for {key[0]} #{key[1]}, retry the request"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# ═══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ═══════════════════════════════════════════════════════════════════════════════

class UnitOfWork(ABC):

    @abstractmethod
    def get_vehicle(self, vehicle_id: int) -> Vehicle | None: ...

    @abstractmethod
    def get_user(self, user_id: int) -> User | None: ...

    @abstractmethod
    def get_reservation(self, reservation_id: int) -> Reservation | None: ...

    @abstractmethod
    def find_active_overlapping(
        self, vehicle_id: int, window: TimeWindow, exclude_id: int | None = None,
    ) -> list[Reservation]:
        """Reservations of `vehicle_id` in an active status overlapping `window`."""

    @abstractmethod
    def find_driver_overlapping(
        self, driver_id: int, window: TimeWindow, exclude_id: int | None = None,
    ) -> list[Reservation]:
        """Active reservations assigned to `driver_id` on any vehicle overlapping `window`."""

    @abstractmethod
    def find_reservations(
        self,
        statuses: Iterable[ReservationStatus] | None = None,
        vehicle_id: int | None = None,
        window: TimeWindow | None = None,
    ) -> list[Reservation]: ...

    @abstractmethod
    def add_reservation(self, reservation: Reservation) -> Reservation:
        """Insert and assign an id. Raises DuplicateReferenceError on a taken reference."""

    @abstractmethod
    def save_reservation(self, reservation: Reservation) -> Reservation: ...

    @abstractmethod
    def add_vehicle(self, vehicle: Vehicle) -> Vehicle: ...

    @abstractmethod
    def save_vehicle(self, vehicle: Vehicle) -> Vehicle: ...

    @abstractmethod
    def list_vehicles(self, ids: Iterable[int] | None = None) -> list[Vehicle]: ...

    @abstractmethod
    def list_users(self, role: RoleName | None = None, active_only: bool = True) -> list[User]: ...

    @abstractmethod
    def record_transition(
        self,
        reservation: Reservation,
        previous: ReservationStatus | None,
        actor_id: int | None,
        comment: str | None = None,
    ) -> None: ...

    @abstractmethod
    def list_history(self, reservation_id: int) -> list[HistoryEntry]: ...

    # ─── Helpers shared by implementations ────────────────────────────────────
    def require_reservation(self, reservation_id: int) -> Reservation:
        r = self.get_reservation(reservation_id)
        if r is None:
            raise NotFoundError("Reservation", reservation_id)
        return r

    def require_vehicle(self, vehicle_id: int) -> Vehicle:
        v = self.get_vehicle(vehicle_id)
        if v is None:
            raise NotFoundError("Vehicle", vehicle_id)
        return v


class ReservationStore(ABC):

    @abstractmethod
    def unit_of_work(self, lock_keys: Iterable[LockKey] = (), timeout: float = 5.0):
        """Context manager yielding a UnitOfWork holding `lock_keys`."""


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY IMPLEMENTATION
# ═══════════════════════════════════════════════════════════════════════════════

def _copy(model):
    return model.model_copy(deep=True)


class _InMemoryUnitOfWork(UnitOfWork):
    """Stages writes locally, the store applies them only on commit."""

    def __init__(self, store: "InMemoryReservationStore"):
        self._store        = store
        self._reservations: dict[int, Reservation] = {}
        self._vehicles:     dict[int, Vehicle] = {}
        self._history:      list[HistoryEntry] = []
        self._claimed:      set[str] = set()

    # ─── Reads ────────────────────────────────────────────────────────────────
    def get_vehicle(self, vehicle_id):
        if vehicle_id in self._vehicles:
            return _copy(self._vehicles[vehicle_id])
        v = self._store._vehicles.get(vehicle_id)
        return _copy(v) if v else None

    def get_user(self, user_id):
        u = self._store._users.get(user_id)
        return _copy(u) if u else None

    def get_reservation(self, reservation_id):
        if reservation_id in self._reservations:
            return _copy(self._reservations[reservation_id])
        r = self._store._reservations.get(reservation_id)
        return _copy(r) if r else None

    def _all_reservations(self) -> list[Reservation]:
        with self._store._data_lock:
            merged = dict(self._store._reservations)
        merged.update(self._reservations)
        return [_copy(r) for _, r in sorted(merged.items())]

    def find_active_overlapping(self, vehicle_id, window, exclude_id=None):
        return [
            r for r in self._all_reservations()
            if r.vehicleId == vehicle_id and r.is_active
            and r.id != exclude_id and r.window.overlaps(window)
        ]

    def find_driver_overlapping(self, driver_id, window, exclude_id=None):
        return [
            r for r in self._all_reservations()
            if r.driverId == driver_id and r.is_active
            and r.id != exclude_id and r.window.overlaps(window)
        ]

    def find_reservations(self, statuses=None, vehicle_id=None, window=None):
        wanted = set(statuses) if statuses is not None else None
        found = []
        for r in self._all_reservations():
            if wanted is not None and r.status not in wanted:
                continue
            if vehicle_id is not None and r.vehicleId != vehicle_id:
                continue
            if window is not None and not r.window.overlaps(window):
                continue
            found.append(r)
        return sorted(found, key=lambda r: r.startDate)

    def list_vehicles(self, ids=None):
        with self._store._data_lock:
            merged = dict(self._store._vehicles)
        merged.update(self._vehicles)
        if ids is not None:
            wanted = set(ids)
            merged = {k: v for k, v in merged.items() if k in wanted}
        return [_copy(v) for _, v in sorted(merged.items())]

    def list_users(self, role=None, active_only=True):
        return [
            _copy(u) for _, u in sorted(self._store._users.items())
            if (role is None or u.role == role) and (u.isActive or not active_only)
        ]

    def list_history(self, reservation_id):
        with self._store._data_lock:
            committed = list(self._store._history)
        entries = [h for h in committed + self._history if h.reservationId == reservation_id]
        return [_copy(h) for h in entries]

    # ─── Writes ───────────────────────────────────────────────────────────────
    def add_reservation(self, reservation):
        self._store._claim_reference(reservation.referenceNumber)
        self._claimed.add(reservation.referenceNumber)
        stored = reservation.model_copy(update={"id": self._store._next_id("reservation")}, deep=True)
        self._reservations[stored.id] = stored
        return _copy(stored)

    def save_reservation(self, reservation):
        if reservation.id is None:
            raise ValueError("Cannot save a reservation without an id")
        self._reservations[reservation.id] = _copy(reservation)
        return _copy(reservation)

    def add_vehicle(self, vehicle):
        stored = vehicle.model_copy(update={"id": self._store._next_id("vehicle")}, deep=True)
        self._vehicles[stored.id] = stored
        return _copy(stored)

    def save_vehicle(self, vehicle):
        self._vehicles[vehicle.id] = _copy(vehicle)
        return _copy(vehicle)

    def record_transition(self, reservation, previous, actor_id, comment=None):
        self._history.append(HistoryEntry(
            reservationId=reservation.id,
            previousStatus=previous,
            newStatus=reservation.status,
            changedById=actor_id,
            comment=comment,
            createdAt=reservation.updatedAt or datetime.now(timezone.utc),
        ))

    # ─── Completion ───────────────────────────────────────────────────────────
    def _commit(self):
        with self._store._data_lock:
            self._store._reservations.update(self._reservations)
            self._store._vehicles.update(self._vehicles)
            self._store._history.extend(self._history)
            self._store._references.update(self._claimed)
            self._store._claimed.difference_update(self._claimed)

    def _rollback(self):
        with self._store._data_lock:
            self._store._claimed.difference_update(self._claimed)


class InMemoryReservationStore(ReservationStore):
    """Single-process store used by tests and local tooling."""

    def __init__(self):
        self._users:        dict[int, User] = {}
        self._vehicles:     dict[int, Vehicle] = {}
        self._reservations: dict[int, Reservation] = {}
        self._history:      list[HistoryEntry] = []
        self._references:   set[str] = set()
        self._claimed:      set[str] = set()
        self._counters      = {"reservation": itertools.count(1), "vehicle": itertools.count(1)}
        self._data_lock     = threading.RLock()
        self._locks         = LockRegistry()

    def _next_id(self, kind: str) -> int:
        with self._data_lock:
            return next(self._counters[kind])

    def _claim_reference(self, reference: str) -> None:
        with self._data_lock:
            if reference in self._references or reference in self._claimed:
                raise DuplicateReferenceError(reference)
            self._claimed.add(reference)

    def add_user(self, user: User) -> User:
        with self._data_lock:
            self._users[user.id] = _copy(user)
        return user

    @contextmanager
    def unit_of_work(self, lock_keys=(), timeout=5.0):
        with self._locks.hold(lock_keys, timeout):
            uow = _InMemoryUnitOfWork(self)
            try:
                yield uow
            except BaseException:
                uow._rollback()
                raise
            uow._commit()
