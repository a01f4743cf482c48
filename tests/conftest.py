import pytest
import pytest_asyncio

from seathold.db.base import Base
from seathold.db.session import make_engine, make_session_factory
from seathold.models.models import Bus, Schedule
from seathold.services.reservation_manager import ReservationManager
from seathold.services.reservation_store import ReservationStore
from seathold.services.tickets import TicketStore

TRAVEL_DATE = "2024-06-01"
OTHER_DATE = "2024-06-02"
SEATS = ["A1", "A2", "A3", "A4", "B1", "B2", "B3", "B4"]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'seathold.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def schedule(session_factory):
    async with session_factory() as db, db.begin():
        bus = Bus(registration_number="BA 2 KHA 1234", name="Deluxe Express", capacity=len(SEATS))
        db.add(bus)
        await db.flush()
        sched = Schedule(
            bus_id=bus.id,
            travel_dates=[TRAVEL_DATE, OTHER_DATE],
            default_available=list(SEATS),
            default_booked=[],
            fare=1200,
        )
        db.add(sched)
        await db.flush()
    return sched


@pytest_asyncio.fixture
async def manager(session_factory, schedule):
    m = ReservationManager(session_factory, ttl_seconds=600)
    yield m
    await m.scheduler.shutdown()


@pytest.fixture
def make_ticket(session_factory):
    """Create a pending ticket for a reservation, the way payment initiation does."""
    async def _make(reservation_id, price=2400):
        async with session_factory() as db, db.begin():
            reservation = await ReservationStore().get(db, reservation_id)
            ticket = await TicketStore().create(db, reservation, price, passenger_name="Sita Sharma",
                                                passenger_email="sita@example.com", passenger_phone="9800000000")
        return ticket

    return _make
