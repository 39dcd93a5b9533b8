import itertools
import re

import pytest

from fleetbook.core.entities import Reservation
from fleetbook.core.errors import ConflictError, DuplicateReferenceError
from fleetbook.core.reference import ReferenceGenerator, to_base36
from fleetbook.core.state_machine import ReservationStateMachine

from conftest import at, trip, window

REFERENCE = re.compile(r"^RES-[0-9A-Z]+-[0-9A-F]{6}$")


class TestBase36:

    def test_known_values(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "Z"
        assert to_base36(36) == "10"

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            to_base36(-1)


class TestReferenceGenerator:

    def test_format(self):
        gen = ReferenceGenerator()
        assert REFERENCE.match(gen.reservation_reference())
        assert gen.checkin_token().startswith("CHK-")
        assert re.match(r"^VH-[0-9A-F]{16}$", gen.vehicle_qr_code())

    def test_ten_thousand_references_are_unique(self):
        gen = ReferenceGenerator(clock=itertools.count(1_700_000_000_000).__next__)
        refs = [gen.reservation_reference() for _ in range(10_000)]
        assert len(set(refs)) == len(refs)

    def test_timestamp_never_goes_backwards(self):
        ticks = iter([5000, 4000, 6000])
        gen = ReferenceGenerator(clock=lambda: next(ticks), random_hex=lambda n: "00" * n)
        stamps = [gen.reservation_reference().split("-")[1] for _ in range(3)]
        assert stamps == [to_base36(5000), to_base36(5000), to_base36(6000)]


def _fixed(*suffixes):
    """random_hex stub returning the given suffixes, then fresh ones."""
    fresh = (f"{i:06x}" for i in itertools.count(1))
    queue = list(suffixes)
    return lambda n: queue.pop(0) if queue else next(fresh)


class TestCollisionRetry:

    def test_create_retries_on_taken_reference(self, store, employee, clock, publisher):
        gen = ReferenceGenerator(clock=lambda: 1000, random_hex=_fixed("aaaaaa", "aaaaaa", "bbbbbb"))
        machine = ReservationStateMachine(store, publisher=publisher, references=gen, clock=clock)

        first  = machine.create(employee, 1, window(10, 9, 10), **trip()).reservation
        second = machine.create(employee, 1, window(10, 11, 12), **trip()).reservation

        assert first.referenceNumber == "RES-RS-AAAAAA"
        assert second.referenceNumber == "RES-RS-BBBBBB"

    def test_create_gives_up_after_bounded_attempts(self, store, employee, clock):
        gen = ReferenceGenerator(clock=lambda: 1000, random_hex=lambda n: "cccccc")
        machine = ReservationStateMachine(store, references=gen, clock=clock, reference_attempts=3)
        machine.create(employee, 1, window(10, 9, 10), **trip())

        with pytest.raises(ConflictError) as exc:
            machine.create(employee, 1, window(10, 11, 12), **trip())
        assert exc.value.code == "REFERENCE_COLLISION"

        # the failed attempt left nothing behind
        assert len(machine.available_vehicles(window(10, 11, 12))) == 2


class TestStoredUniqueness:

    def test_ten_thousand_stored_references_under_forced_collisions(self, store):
        # Two random bytes and a frozen clock make collisions routine
        gen = ReferenceGenerator(random_bytes=2, clock=lambda: 1000)
        draft = Reservation(
            vehicleId=1, requesterId=1, purpose="Load test", destination="Depot",
            startDate=at(10, 9), endDate=at(10, 10),
        )
        collisions = 0
        with store.unit_of_work() as uow:
            for _ in range(10_000):
                while True:
                    try:
                        uow.add_reservation(draft.model_copy(update={"referenceNumber": gen.reservation_reference()}))
                        break
                    except DuplicateReferenceError:
                        collisions += 1

        with store.unit_of_work() as uow:
            refs = [r.referenceNumber for r in uow.find_reservations()]
        assert len(refs) == 10_000
        assert len(set(refs)) == 10_000
        assert collisions > 0
