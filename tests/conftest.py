from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from fleetbook.core.entities import Actor, RoleName, User, Vehicle
from fleetbook.core.events import RecordingEventPublisher
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.store import InMemoryReservationStore
from fleetbook.core.time_window import build_window
from fleetbook.database import Base, build_engine
from fleetbook.models import User as UserRow, Vehicle as VehicleRow
from fleetbook.repositories.sql_store import SqlReservationStore

NOW = datetime(2025, 1, 9, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """A January 2025 instant in UTC."""
    return datetime(2025, 1, day, hour, minute, tzinfo=timezone.utc)


def window(day: int, start_hour: int, end_hour: int):
    return build_window(at(day, start_hour), at(day, end_hour))


USERS = [
    User(id=1, name="Rina Employee",  email="rina@example.com",  role=RoleName.EMPLOYEE),
    User(id=2, name="Budi Employee",  email="budi@example.com",  role=RoleName.EMPLOYEE),
    User(id=3, name="Dedi Driver",    email="dedi@example.com",  role=RoleName.DRIVER),
    User(id=4, name="Eko Driver",     email="eko@example.com",   role=RoleName.DRIVER),
    User(id=5, name="Maya Manager",   email="maya@example.com",  role=RoleName.MANAGER),
    User(id=6, name="Ali Admin",      email="ali@example.com",   role=RoleName.ADMIN),
    User(id=7, name="Gone Driver",    email="gone@example.com",  role=RoleName.DRIVER, isActive=False),
]

VEHICLES = [
    Vehicle(name="Avanza Pool 1", plateNumber="B 1234 CD", brand="Toyota", model="Avanza",
            year=2022, capacity=7, currentOdometer=1000),
    Vehicle(name="Xpander Pool 2", plateNumber="B 5678 EF", brand="Mitsubishi", model="Xpander",
            year=2023, capacity=4, currentOdometer=500),
]


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def store():
    s = InMemoryReservationStore()
    for u in USERS:
        s.add_user(u)
    with s.unit_of_work() as uow:
        for v in VEHICLES:
            uow.add_vehicle(v)
    return s


@pytest.fixture
def publisher():
    return RecordingEventPublisher()


@pytest.fixture
def machine(store, publisher, clock):
    return ReservationStateMachine(store, publisher=publisher, clock=clock)


# ─── Actors ───────────────────────────────────────────────────────────────────
@pytest.fixture
def employee():
    return Actor(id=1, role=RoleName.EMPLOYEE)


@pytest.fixture
def other_employee():
    return Actor(id=2, role=RoleName.EMPLOYEE)


@pytest.fixture
def driver():
    return Actor(id=3, role=RoleName.DRIVER)


@pytest.fixture
def manager():
    return Actor(id=5, role=RoleName.MANAGER)


@pytest.fixture
def admin():
    return Actor(id=6, role=RoleName.ADMIN)


def trip(**overrides) -> dict:
    """Default metadata for create()."""
    data = {"purpose": "Client visit", "destination": "Bandung"}
    data.update(overrides)
    return data


# ─── SQL fixtures ─────────────────────────────────────────────────────────────
@pytest.fixture
def sql_engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    factory = sessionmaker(bind=sql_engine, autoflush=False, expire_on_commit=False)
    db = factory()
    db.add_all([UserRow(**u.model_dump()) for u in USERS])
    db.add_all([VehicleRow(**v.model_dump(exclude={"id"})) for v in VEHICLES])
    db.commit()
    db.close()
    return factory


@pytest.fixture
def sql_store(session_factory):
    return SqlReservationStore(session_factory)


@pytest.fixture
def sql_machine(sql_store, publisher, clock):
    return ReservationStateMachine(sql_store, publisher=publisher, clock=clock)
