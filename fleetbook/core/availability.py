from typing import Iterable

from fleetbook.core.entities import RoleName
from fleetbook.core.store import UnitOfWork
from fleetbook.core.time_window import TimeWindow


class AvailabilityResolver:
    """
    Answers "is this vehicle (or driver) free for this window?".

    Bound to a unit of work so that, when the caller holds the vehicle's
    lock, the answer cannot change before the caller's write commits.
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    def has_conflict(self, vehicle_id: int, window: TimeWindow, exclude_reservation_id: int | None = None) -> bool:
        return bool(self.uow.find_active_overlapping(vehicle_id, window, exclude_reservation_id))

    def has_driver_conflict(self, driver_id: int, window: TimeWindow,
                            exclude_reservation_id: int | None = None) -> bool:
        return bool(self.uow.find_driver_overlapping(driver_id, window, exclude_reservation_id))

    def find_available_drivers(self, window: TimeWindow) -> set[int]:
        return {
            d.id for d in self.uow.list_users(role=RoleName.DRIVER)
            if not self.has_driver_conflict(d.id, window)
        }

    def find_available_vehicles(
        self,
        candidate_ids: Iterable[int] | None,
        window: TimeWindow,
        require_driver: bool = False,
    ) -> set[int]:
        """
        Filter candidates (all vehicles when None) down to those that accept
        reservations and have no active reservation overlapping `window`.
        With `require_driver`, nothing is available unless some driver is free too.
        """
        if require_driver and not self.find_available_drivers(window):
            return set()
        return {
            v.id for v in self.uow.list_vehicles(candidate_ids)
            if v.accepts_reservations and not self.has_conflict(v.id, window)
        }
