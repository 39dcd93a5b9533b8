from datetime import datetime

import pytest

from fleetbook.core.entities import Actor, Reservation, ReservationStatus, RoleName, Vehicle, VehicleStatus
from fleetbook.core.errors import (
    ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError,
)
from fleetbook.core.events import EventPublisher, EventType
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.time_window import TimeWindow

from conftest import at, trip, window

S = ReservationStatus


def _vehicle(machine, vehicle_id=1):
    with machine.store.unit_of_work() as uow:
        return uow.require_vehicle(vehicle_id)


def _set_vehicle_status(store, vehicle_id, status):
    with store.unit_of_work() as uow:
        v = uow.require_vehicle(vehicle_id)
        uow.save_vehicle(v.model_copy(update={"status": status}))


def _approved(machine, employee, manager, clock, **kwargs):
    """Create + approve a Jan 10 09:00-17:00 trip on vehicle 1."""
    r = machine.create(employee, 1, window(10, 9, 17), **trip(**kwargs)).reservation
    return machine.approve(manager, r.id).reservation


# ═══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE SCENARIO
# ═══════════════════════════════════════════════════════════════════════════════

class TestJanuaryTenthScenario:

    def test_full_scenario(self, machine, employee, other_employee, manager, clock, publisher):
        a = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        assert a.status == S.PENDING
        assert a.referenceNumber.startswith("RES-")

        with pytest.raises(ConflictError) as exc:
            machine.create(other_employee, 1, window(10, 12, 14), **trip())
        assert exc.value.code == "VEHICLE_CONFLICT"

        c = machine.create(other_employee, 1, window(10, 17, 18), **trip()).reservation
        assert c.status == S.PENDING

        clock.set(at(10, 10))
        approved = machine.approve(manager, a.id, "Have a safe trip").reservation
        assert approved.status == S.APPROVED
        assert approved.approval.approverId == manager.id
        assert approved.checkInToken.startswith("CHK-")
        assert _vehicle(machine).status == VehicleStatus.RESERVED

        cancelled = machine.cancel(employee, a.id, "Meeting moved online").reservation
        assert cancelled.status == S.CANCELLED
        assert cancelled.cancellation.reason == "Meeting moved online"
        assert _vehicle(machine).status == VehicleStatus.AVAILABLE

        for attempt in (
            lambda: machine.approve(manager, a.id),
            lambda: machine.cancel(employee, a.id, "again"),
            lambda: machine.check_in(employee, a.id, odometer=1100),
            lambda: machine.reschedule(employee, a.id, purpose="changed"),
        ):
            with pytest.raises(InvalidTransitionError):
                attempt()
        assert machine.get(employee, a.id).status == S.CANCELLED

        assert publisher.types == [
            EventType.CREATED, EventType.CREATED, EventType.APPROVED, EventType.CANCELLED,
        ]

    def test_failed_create_is_not_persisted(self, machine, employee, manager):
        machine.create(employee, 1, window(10, 9, 17), **trip())
        with pytest.raises(ConflictError):
            machine.create(employee, 1, window(10, 12, 14), **trip())
        with machine.store.unit_of_work() as uow:
            assert len(uow.find_reservations()) == 1


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSITION TABLE
# ═══════════════════════════════════════════════════════════════════════════════

class TestInvalidTransitions:

    def test_check_out_on_pending(self, machine, employee):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        with pytest.raises(InvalidTransitionError) as exc:
            machine.check_out(employee, r.id, odometer=1200)
        assert exc.value.current == S.PENDING
        assert exc.value.required == ["CHECKED_IN"]

    def test_check_out_before_check_in(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        with pytest.raises(InvalidTransitionError):
            machine.check_out(employee, r.id, odometer=1200)

    def test_check_in_on_pending(self, machine, employee, clock):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        clock.set(at(10, 9))
        with pytest.raises(InvalidTransitionError):
            machine.check_in(employee, r.id, odometer=1100)

    def test_reject_after_approval(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        with pytest.raises(InvalidTransitionError):
            machine.reject(manager, r.id, "too late")

    def test_status_checked_before_permission(self, machine, employee, other_employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        # a stranger asking for an impossible transition learns about the status first
        with pytest.raises(InvalidTransitionError):
            machine.reschedule(other_employee, r.id, purpose="mine now")

    def test_unknown_reservation(self, machine, manager):
        with pytest.raises(NotFoundError):
            machine.approve(manager, 999)


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════

class TestCreate:

    def test_start_in_past(self, machine, employee, clock):
        clock.set(at(10, 10))
        with pytest.raises(ValidationError) as exc:
            machine.create(employee, 1, window(10, 9, 17), **trip())
        assert exc.value.code == "START_IN_PAST"

    def test_naive_window_is_read_as_utc(self, machine, employee):
        naive = TimeWindow(start=datetime(2025, 1, 10, 9), end=datetime(2025, 1, 10, 17))
        r = machine.create(employee, 1, naive, **trip()).reservation
        assert r.startDate == at(10, 9)
        with pytest.raises(ConflictError):
            machine.create(employee, 1, window(10, 12, 13), **trip())

    def test_inverted_window_is_a_core_validation_error(self, machine, employee):
        with pytest.raises(ValidationError) as exc:
            machine.create(employee, 1, TimeWindow(start=at(10, 17), end=at(10, 9)), **trip())
        assert exc.value.code == "INVALID_DATE_RANGE"

    def test_purpose_required(self, machine, employee):
        with pytest.raises(ValidationError) as exc:
            machine.create(employee, 1, window(10, 9, 17), **trip(purpose="   "))
        assert exc.value.field == "purpose"

    def test_unknown_vehicle(self, machine, employee):
        with pytest.raises(NotFoundError):
            machine.create(employee, 42, window(10, 9, 17), **trip())

    @pytest.mark.parametrize("status", [VehicleStatus.MAINTENANCE, VehicleStatus.OUT_OF_SERVICE])
    def test_blocked_vehicle(self, machine, store, employee, status):
        _set_vehicle_status(store, 1, status)
        with pytest.raises(ConflictError) as exc:
            machine.create(employee, 1, window(10, 9, 17), **trip())
        assert exc.value.code == "VEHICLE_UNAVAILABLE"

    def test_capacity(self, machine, employee):
        with pytest.raises(ValidationError) as exc:
            machine.create(employee, 2, window(10, 9, 17), **trip(passenger_count=5))
        assert exc.value.field == "passengerCount"

    def test_driver_must_be_an_active_driver(self, machine, employee):
        with pytest.raises(NotFoundError):
            machine.create(employee, 1, window(10, 9, 17), driver_id=5, **trip())   # a manager
        with pytest.raises(NotFoundError):
            machine.create(employee, 1, window(10, 9, 17), driver_id=7, **trip())   # inactive

    def test_driver_conflict_across_vehicles(self, machine, employee, other_employee):
        machine.create(employee, 1, window(10, 9, 17), driver_id=3, **trip())
        with pytest.raises(ConflictError) as exc:
            machine.create(other_employee, 2, window(10, 12, 14), driver_id=3, **trip())
        assert exc.value.code == "DRIVER_CONFLICT"
        # a different driver is fine
        machine.create(other_employee, 2, window(10, 12, 14), driver_id=4, **trip())

    def test_terminal_reservations_free_the_slot(self, machine, employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        rejected = machine.reject(manager, r.id, "Pool car needed elsewhere").reservation
        assert rejected.status.is_terminal and not rejected.is_active
        again =machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        assert again.status == S.PENDING

    def test_history_records_creation(self, machine, employee):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        [entry] = machine.history(employee, r.id)
        assert entry.previousStatus is None
        assert entry.newStatus == S.PENDING
        assert entry.changedById == employee.id


# ═══════════════════════════════════════════════════════════════════════════════
# RESCHEDULE
# ═══════════════════════════════════════════════════════════════════════════════

class TestReschedule:

    def test_move_window(self, machine, employee, publisher):
        r = machine.create(employee, 1, window(10, 9, 12), **trip()).reservation
        moved = machine.reschedule(employee, r.id, window(10, 10, 13)).reservation
        assert moved.startDate == at(10, 10)
        assert moved.status == S.PENDING
        assert publisher.types[-1] == EventType.UPDATED

    def test_own_window_is_not_a_conflict(self, machine, employee):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        machine.reschedule(employee, r.id, window(10, 10, 16))

    def test_conflict_with_other_reservation(self, machine, employee, other_employee):
        machine.create(other_employee, 1, window(10, 13, 17), **trip())
        r = machine.create(employee, 1, window(10, 9, 12), **trip()).reservation
        with pytest.raises(ConflictError):
            machine.reschedule(employee, r.id, window(10, 9, 14))

    def test_switch_vehicle(self, machine, employee):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        moved = machine.reschedule(employee, r.id, vehicle_id=2).reservation
        assert moved.vehicleId == 2
        # the old slot is free again
        machine.create(employee, 1, window(10, 9, 17), **trip())

    def test_omitted_driver_is_kept(self, machine, employee):
        r = machine.create(employee, 1, window(10, 9, 17), driver_id=3, **trip()).reservation
        moved = machine.reschedule(employee, r.id, window(10, 10, 16)).reservation
        assert moved.driverId == 3

    def test_clear_driver(self, machine, employee, other_employee):
        r = machine.create(employee, 1, window(10, 9, 17), driver_id=3, **trip()).reservation
        moved = machine.reschedule(employee, r.id, clear_driver=True).reservation
        assert moved.driverId is None
        # driver 3 is free for the same slot
        machine.create(other_employee, 2, window(10, 9, 17), driver_id=3, **trip())

    def test_only_owner_or_approver(self, machine, employee, other_employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        with pytest.raises(ForbiddenError):
            machine.reschedule(other_employee, r.id, notes="hijack")
        machine.reschedule(manager, r.id, notes="Bring the projector")


# ═══════════════════════════════════════════════════════════════════════════════
# APPROVE / REJECT / CANCEL
# ═══════════════════════════════════════════════════════════════════════════════

class TestApprove:

    def test_requires_approver(self, machine, employee, driver):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        for actor in (employee, driver):
            with pytest.raises(ForbiddenError):
                machine.approve(actor, r.id)

    def test_self_approval_is_allowed(self, machine, manager):
        r = machine.create(manager, 1, window(10, 9, 17), **trip()).reservation
        assert machine.approve(manager, r.id).reservation.status == S.APPROVED

    def test_future_window_leaves_vehicle_available(self, machine, employee, manager, clock):
        _approved(machine, employee, manager, clock)
        assert _vehicle(machine).status == VehicleStatus.AVAILABLE

    def test_conflict_leaves_reservation_pending(self, machine, store, employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        # an approved booking that bypassed the create-time check
        with store.unit_of_work() as uow:
            uow.add_reservation(Reservation(
                referenceNumber="RES-INJECTED-000000", vehicleId=1, requesterId=2,
                status=S.APPROVED, startDate=at(10, 12), endDate=at(10, 14),
                purpose="Injected", destination="Depot",
            ))
        with pytest.raises(ConflictError):
            machine.approve(manager, r.id)
        assert machine.get(manager, r.id).status == S.PENDING

    def test_vehicle_blocked_since_creation(self, machine, store, employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        _set_vehicle_status(store, 1, VehicleStatus.MAINTENANCE)
        with pytest.raises(ConflictError):
            machine.approve(manager, r.id)


class TestRejectAndCancel:

    def test_reject_requires_reason(self, machine, employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        with pytest.raises(ValidationError) as exc:
            machine.reject(manager, r.id, "  ")
        assert exc.value.code == "REASON_REQUIRED"

    def test_reject(self, machine, employee, manager):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        rejected = machine.reject(manager, r.id, "Budget freeze").reservation
        assert rejected.status == S.REJECTED
        assert rejected.rejectionReason == "Budget freeze"

    def test_stranger_cannot_cancel(self, machine, employee, other_employee):
        r = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        with pytest.raises(ForbiddenError):
            machine.cancel(other_employee, r.id, "not mine")

    def test_cancel_keeps_hold_of_other_covering_reservation(self, machine, store, employee, manager, clock):
        a = machine.create(employee, 1, window(10, 9, 17), **trip()).reservation
        clock.set(at(10, 10))
        machine.approve(manager, a.id)
        # a second approved booking covering now (pre-dates the overlap rule)
        with store.unit_of_work() as uow:
            uow.add_reservation(Reservation(
                referenceNumber="RES-LEGACY-000001", vehicleId=1, requesterId=2,
                status=S.APPROVED, startDate=at(10, 8), endDate=at(10, 11),
                purpose="Legacy", destination="Depot",
            ))
        machine.cancel(employee, a.id, "No longer needed")
        assert _vehicle(machine).status == VehicleStatus.RESERVED


# ═══════════════════════════════════════════════════════════════════════════════
# CHECK-IN / CHECK-OUT
# ═══════════════════════════════════════════════════════════════════════════════

class TestTrip:

    def test_round_trip(self, machine, employee, manager, clock, publisher):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 8, 45))

        checked_in = machine.check_in(employee, r.id, odometer=1010, token=r.checkInToken).reservation
        assert checked_in.status == S.CHECKED_IN
        assert _vehicle(machine).status == VehicleStatus.IN_USE

        clock.set(at(10, 16))
        done = machine.check_out(employee, r.id, odometer=1150, rating=5, feedback="Clean car").reservation
        assert done.status == S.CHECKED_OUT
        assert done.checkOut.odometer == 1150
        vehicle = _vehicle(machine)
        assert vehicle.status == VehicleStatus.AVAILABLE
        assert vehicle.currentOdometer == 1150

        history = machine.history(employee, r.id)
        assert [h.newStatus for h in history] == [S.PENDING, S.APPROVED, S.CHECKED_IN, S.CHECKED_OUT]
        assert publisher.types[-2:] == [EventType.CHECKED_IN, EventType.CHECKED_OUT]

    def test_late_return_hands_vehicle_to_next_booking(self, machine, employee, other_employee, manager, clock):
        first  = machine.create(employee, 1, window(10, 9, 12), **trip()).reservation
        second = machine.create(other_employee, 1, window(10, 12, 17), **trip()).reservation
        machine.approve(manager, first.id)
        machine.approve(manager, second.id)

        clock.set(at(10, 9))
        machine.check_in(employee, first.id, odometer=1000)
        clock.set(at(10, 12, 30))
        machine.check_out(employee, first.id, odometer=1040)
        assert _vehicle(machine).status == VehicleStatus.RESERVED

    def test_assigned_driver_can_run_the_trip(self, machine, employee, driver, manager, clock):
        r = machine.create(employee, 1, window(10, 9, 17), driver_id=driver.id, **trip()).reservation
        machine.approve(manager, r.id)
        clock.set(at(10, 9))
        machine.check_in(driver, r.id, odometer=1000)
        machine.check_out(driver, r.id, odometer=1080)

    def test_manager_without_relation_cannot_check_in(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        with pytest.raises(ForbiddenError):
            machine.check_in(manager, r.id, odometer=1000)

    @pytest.mark.parametrize("now", [at(10, 8, 29), at(10, 11, 0), at(10, 17, 0)])
    def test_check_in_window(self, machine, employee, manager, clock, now):
        r = _approved(machine, employee, manager, clock)
        clock.set(now)
        with pytest.raises(ValidationError) as exc:
            machine.check_in(employee, r.id, odometer=1000)
        assert exc.value.code == "CHECKIN_WINDOW"

    def test_check_in_token_mismatch(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        with pytest.raises(ForbiddenError) as exc:
            machine.check_in(employee, r.id, odometer=1000, token="CHK-wrong")
        assert exc.value.code == "CHECKIN_TOKEN_MISMATCH"

    def test_odometer_below_vehicle_reading(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        with pytest.raises(ValidationError) as exc:
            machine.check_in(employee, r.id, odometer=999)
        assert exc.value.code == "INVALID_ODOMETER"

    def test_check_out_odometer_below_check_in(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        machine.check_in(employee, r.id, odometer=1050)
        with pytest.raises(ValidationError):
            machine.check_out(employee, r.id, odometer=1049)

    def test_rating_range(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        machine.check_in(employee, r.id, odometer=1050)
        with pytest.raises(ValidationError) as exc:
            machine.check_out(employee, r.id, odometer=1100, rating=6)
        assert exc.value.code == "INVALID_RATING"

    def test_vehicle_still_out_on_previous_trip(self, machine, store, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        _set_vehicle_status(store, 1, VehicleStatus.IN_USE)
        clock.set(at(10, 9))
        with pytest.raises(ConflictError) as exc:
            machine.check_in(employee, r.id, odometer=1000)
        assert exc.value.code == "VEHICLE_IN_USE"

    def test_checked_out_is_final(self, machine, employee, manager, clock):
        r = _approved(machine, employee, manager, clock)
        clock.set(at(10, 9))
        machine.check_in(employee, r.id, odometer=1000)
        machine.check_out(employee, r.id, odometer=1100)
        with pytest.raises(InvalidTransitionError):
            machine.cancel(employee, r.id, "too late")


# ═══════════════════════════════════════════════════════════════════════════════
# AVAILABILITY & PROJECTION
# ═══════════════════════════════════════════════════════════════════════════════

class TestAvailability:

    def test_available_vehicles(self, machine, employee, store):
        machine.create(employee, 1, window(10, 9, 17), **trip())
        assert machine.available_vehicles(window(10, 12, 13)) == {2}
        assert machine.available_vehicles(window(10, 17, 18)) == {1, 2}
        _set_vehicle_status(store, 2, VehicleStatus.MAINTENANCE)
        assert machine.available_vehicles(window(10, 12, 13)) == set()

    def test_candidates_filter(self, machine):
        assert machine.available_vehicles(window(10, 9, 17), candidate_ids=[2]) == {2}

    def test_require_driver(self, machine, store, employee, other_employee):
        with store.unit_of_work() as uow:
            spare = uow.add_vehicle(Vehicle(name="Spare", plateNumber="B 9999 ZZ", brand="Honda",
                                            model="Brio", year=2021))
        machine.create(employee, 1, window(10, 9, 17), driver_id=3, **trip())
        assert machine.available_drivers(window(10, 12, 13)) == {4}
        machine.create(other_employee, 2, window(10, 9, 17), driver_id=4, **trip())

        assert machine.available_vehicles(window(10, 12, 13)) == {spare.id}
        # both drivers are busy, so no vehicle comes with a driver
        assert machine.available_vehicles(window(10, 12, 13), require_driver=True) == set()
        assert machine.available_vehicles(window(11, 9, 17), require_driver=True) == {1, 2, spare.id}

    def test_refresh_vehicle_statuses(self, machine, employee, manager, clock):
        _approved(machine, employee, manager, clock)
        clock.set(at(10, 9, 30))
        assert machine.refresh_vehicle_statuses() == 1
        assert _vehicle(machine).status == VehicleStatus.RESERVED
        assert machine.refresh_vehicle_statuses() == 0

        clock.set(at(10, 17))
        assert machine.refresh_vehicle_statuses() == 1
        assert _vehicle(machine).status == VehicleStatus.AVAILABLE


# ═══════════════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════════════

class _ExplodingPublisher(EventPublisher):
    def publish(self, event):
        raise RuntimeError("mail server down")


class TestEvents:

    def test_publisher_failure_does_not_undo_transition(self, store, clock, employee, caplog):
        machine = ReservationStateMachine(store, publisher=_ExplodingPublisher(), clock=clock)
        event = machine.create(employee, 1, window(10, 9, 17), **trip())
        assert machine.get(employee, event.reservation.id).status == S.PENDING
        assert "Failed to publish" in caplog.text

    def test_event_carries_actor_and_snapshot(self, machine, employee, publisher):
        machine.create(employee, 1, window(10, 9, 17), **trip())
        [event] = publisher.events
        assert event.actorId == employee.id
        assert event.reservation.status == S.PENDING

    def test_view_policy(self, machine, employee, other_employee, driver):
        r = machine.create(employee, 1, window(10, 9, 17), driver_id=driver.id, **trip()).reservation
        assert machine.get(driver, r.id).id == r.id
        with pytest.raises(ForbiddenError):
            machine.get(other_employee, r.id)
        with pytest.raises(ForbiddenError):
            machine.history(Actor(id=4, role=RoleName.DRIVER), r.id)
