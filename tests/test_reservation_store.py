from datetime import timedelta

import pytest

from seathold.models.models import ReservationState
from seathold.services.errors import SeatConflict
from seathold.services.reservation_store import ReservationStore, utcnow
from seathold.services.seat_ledger import SeatLedger

TRAVEL_DATE = "2024-06-01"


@pytest.mark.asyncio
async def test_create_records_hold_and_expiry(session_factory, schedule):
    store, ledger = ReservationStore(), SeatLedger()
    now = utcnow()
    async with session_factory() as db, db.begin():
        reservation = await store.create(db, ledger, schedule, TRAVEL_DATE, ["A1", "A2"], 600, now=now)

    async with session_factory() as db:
        loaded = await store.get(db, reservation.id)
        state = await ledger.get_seat_state(db, schedule, TRAVEL_DATE)
    assert loaded.state == ReservationState.ACTIVE.value
    assert loaded.expires_at == now + timedelta(seconds=600)
    assert loaded.seat_labels == ["A1", "A2"]
    assert state.held == ["A1", "A2"]


@pytest.mark.asyncio
async def test_create_conflict_rolls_back(session_factory, schedule):
    store, ledger = ReservationStore(), SeatLedger()
    async with session_factory() as db, db.begin():
        await store.create(db, ledger, schedule, TRAVEL_DATE, ["A1"], 600)

    with pytest.raises(SeatConflict) as exc:
        async with session_factory() as db, db.begin():
            await store.create(db, ledger, schedule, TRAVEL_DATE, ["A2", "A1"], 600)
    assert exc.value.seats == ["A1"]

    async with session_factory() as db:
        state = await ledger.get_seat_state(db, schedule, TRAVEL_DATE)
        active = await store.list_active(db)
    assert state.held == ["A1"]
    assert len(active) == 1


@pytest.mark.asyncio
async def test_overdue_and_purge(session_factory, schedule):
    store, ledger = ReservationStore(), SeatLedger()
    past = utcnow() - timedelta(hours=2)
    async with session_factory() as db, db.begin():
        old = await store.create(db, ledger, schedule, TRAVEL_DATE, ["B1"], 60, now=past)
        fresh = await store.create(db, ledger, schedule, TRAVEL_DATE, ["B2"], 600)

    async with session_factory() as db:
        overdue = await store.list_overdue(db, utcnow())
    assert overdue == [old.id]

    async with session_factory() as db, db.begin():
        row = await store.get(db, old.id, for_update=True)
        await store.finish(db, row, ReservationState.EXPIRED)
        row.resolved_at = past

    async with session_factory() as db, db.begin():
        purged = await store.purge_resolved(db, utcnow() - timedelta(hours=1))
    assert purged == 1

    async with session_factory() as db, db.begin():
        assert await store.get(db, old.id) is None
        assert await store.delete(db, fresh.id) is True
        assert await store.delete(db, fresh.id) is False
