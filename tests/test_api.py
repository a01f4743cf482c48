import hashlib
import hmac
import json

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from seathold.config import settings
from seathold.main import create_app
from seathold.modules.payments import router as payments_router
from seathold.services.errors import LedgerWriteFailure
from seathold.services.payment_gateway import KhaltiAdapter
from seathold.services.reservation_manager import ReservationManager
from seathold.services.seat_ledger import SeatLedger

TRAVEL_DATE = "2024-06-01"


@pytest_asyncio.fixture
async def app(session_factory, schedule):
    app = create_app(session_factory=session_factory, sweep_enabled=False)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def webhook_store(monkeypatch):
    """In-memory replacement for the Redis replay keys."""
    seen = set()

    async def is_processed(provider, event_id):
        return (provider, event_id) in seen

    async def mark(provider, event_id, ttl=None):
        if (provider, event_id) in seen:
            return False
        seen.add((provider, event_id))
        return True

    async def forget(provider, event_id):
        seen.discard((provider, event_id))

    monkeypatch.setattr(payments_router, "is_event_processed", is_processed)
    monkeypatch.setattr(payments_router, "mark_event_processed", mark)
    monkeypatch.setattr(payments_router, "forget_event", forget)
    return seen


async def _reserve(client, schedule, seats):
    return await client.post("/reservations", json={"bus_id": schedule.bus_id, "date": TRAVEL_DATE, "seat_labels": seats})


@pytest.mark.asyncio
async def test_reserve_then_overlapping_reserve_conflicts(client, schedule):
    first = await _reserve(client, schedule, ["A1", "A2"])
    assert first.status_code == 201
    body = first.json()
    assert body["seat_labels"] == ["A1", "A2"]
    assert body["reservation_id"] and body["expires_at"]

    second = await _reserve(client, schedule, ["A1", "A2", "A3"])
    assert second.status_code == 409
    assert second.json()["conflicting_seats"] == ["A1", "A2"]
    assert "detail" in second.json()


@pytest.mark.asyncio
async def test_reservation_status_and_release(client, schedule):
    rid = (await _reserve(client, schedule, ["B1"])).json()["reservation_id"]

    status = await client.get(f"/reservations/{rid}")
    assert status.status_code == 200
    assert status.json()["state"] == "active"
    assert status.json()["expired"] is False
    assert status.json()["is_paid"] is False
    assert 0 < status.json()["remaining_seconds"] <= 600

    released = await client.delete(f"/reservations/{rid}")
    assert released.json() == {"released": True}
    again = await client.delete(f"/reservations/{rid}")
    assert again.status_code == 200
    assert again.json() == {"released": False}

    missing = await client.get("/reservations/not-a-reservation")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_confirm_endpoint_is_idempotent(client, schedule):
    rid = (await _reserve(client, schedule, ["A3", "A4"])).json()["reservation_id"]

    first = await client.post("/reservations/confirm", json={"reservation_id": rid, "bus_id": schedule.bus_id})
    second = await client.post("/reservations/confirm", json={"reservation_id": rid})
    assert first.status_code == 200
    assert first.json()["confirmed"] is True
    assert first.json()["seat_labels"] == ["A3", "A4"]
    assert second.json()["already_confirmed"] is True

    seats = await client.get(f"/buses/{schedule.bus_id}/seats", params={"date": TRAVEL_DATE})
    assert seats.status_code == 200
    assert seats.json()["booked"] == ["A3", "A4"]
    assert seats.json()["permanently_booked"] == ["A3", "A4"]

    permanent = await client.get(f"/admin/schedules/{schedule.id}/permanent-seats")
    assert permanent.json() == [{"date": TRAVEL_DATE, "seats": ["A3", "A4"]}]

    missing = await client.post("/reservations/confirm", json={})
    assert missing.status_code == 422


@pytest.mark.asyncio
async def test_seat_map_without_date_uses_default_inventory(client, schedule):
    resp = await client.get(f"/buses/{schedule.bus_id}/seats")
    assert resp.status_code == 200
    assert resp.json()["available"] == schedule.default_available
    assert resp.json()["date"] is None

    unknown_bus = await client.get("/buses/9999/seats", params={"date": TRAVEL_DATE})
    assert unknown_bus.status_code == 404


@pytest.mark.asyncio
async def test_bad_requests(client, schedule):
    unknown = await _reserve(client, schedule, ["A1", "Z9"])
    assert unknown.status_code == 400
    assert unknown.json()["unknown_seats"] == ["Z9"]

    empty = await _reserve(client, schedule, [])
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_admin_sweep_and_health(client, schedule):
    sweep = await client.post("/admin/reservations/sweep")
    assert sweep.json() == {"recovered": 0, "purged": 0}

    repair = await client.post("/admin/seats/repair")
    assert repair.json()["processed"] == 0

    health = await client.get("/health")
    assert health.json() == {"status": "ok"}
    assert "x-trace-id" in health.headers

    await _reserve(client, schedule, ["B4"])
    metrics = await client.get("/metrics")
    assert "seathold_reserve_attempts_total" in metrics.text


@pytest.mark.asyncio
async def test_payment_webhook_confirms_and_rejects_replay(client, schedule, monkeypatch, webhook_store):
    monkeypatch.setattr(settings, "KHALTI_SECRET_KEY", "test_khalti_secret")

    async def fake_initiate(self, ticket, amount, currency):
        return {"provider": "khalti", "provider_ref": "pidx-web-1", "checkout_url": None, "raw": {}}

    monkeypatch.setattr(KhaltiAdapter, "initiate", fake_initiate)

    rid = (await _reserve(client, schedule, ["B2", "B3"])).json()["reservation_id"]
    started = await client.post("/payments/initiate", json={
        "reservation_id": rid,
        "provider": "khalti",
        "passenger": {"name": "Gita Rai", "email": "gita@example.com", "phone": "9822222222"},
    })
    assert started.status_code == 200
    assert started.json()["provider_ref"] == "pidx-web-1"

    body = json.dumps({"pidx": "pidx-web-1", "status": "Completed", "transaction_id": "T-100"}).encode()
    signature = hmac.new(b"test_khalti_secret", body, hashlib.sha256).hexdigest()
    headers = {"x-khalti-signature": signature, "content-type": "application/json"}

    bad = await client.post("/payments/webhook/khalti", content=body, headers={"x-khalti-signature": "bad"})
    assert bad.status_code == 400

    first = await client.post("/payments/webhook/khalti", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json() == {"received": True, "duplicate": False}
    replay = await client.post("/payments/webhook/khalti", content=body, headers=headers)
    assert replay.json() == {"received": True, "duplicate": True}

    status = await client.get(f"/reservations/{rid}")
    assert status.json()["state"] == "confirmed"
    assert status.json()["is_paid"] is True

    bookings = await client.get("/admin/bookings", params={"bus_id": schedule.bus_id})
    assert [b["payment_status"] for b in bookings.json()] == ["paid"]

    unknown_provider = await client.post("/payments/webhook/paypal", content=body, headers=headers)
    assert unknown_provider.status_code == 404


def _signed_khalti(payload):
    body = json.dumps(payload).encode()
    signature = hmac.new(b"test_khalti_secret", body, hashlib.sha256).hexdigest()
    return body, {"x-khalti-signature": signature, "content-type": "application/json"}


async def _checkout(client, schedule, monkeypatch, seats, pidx):
    monkeypatch.setattr(settings, "KHALTI_SECRET_KEY", "test_khalti_secret")

    async def fake_initiate(self, ticket, amount, currency):
        return {"provider": "khalti", "provider_ref": pidx, "checkout_url": None, "raw": {}}

    monkeypatch.setattr(KhaltiAdapter, "initiate", fake_initiate)
    rid = (await _reserve(client, schedule, seats)).json()["reservation_id"]
    started = await client.post("/payments/initiate", json={
        "reservation_id": rid,
        "provider": "khalti",
        "passenger": {"name": "Sita Gurung", "email": "sita@example.com", "phone": "9833333333"},
    })
    assert started.status_code == 200
    return rid, started.json()


@pytest.mark.asyncio
async def test_webhook_redelivery_after_storage_failure_confirms(client, schedule, monkeypatch, webhook_store):
    rid, _ = await _checkout(client, schedule, monkeypatch, ["A1"], "pidx-flaky-1")

    real_confirm = ReservationManager.confirm
    calls = []

    async def flaky_confirm(self, *args, **kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            raise LedgerWriteFailure("database is locked")
        return await real_confirm(self, *args, **kwargs)

    monkeypatch.setattr(ReservationManager, "confirm", flaky_confirm)
    body, headers = _signed_khalti({"pidx": "pidx-flaky-1", "status": "Completed", "transaction_id": "T-300"})

    first = await client.post("/payments/webhook/khalti", content=body, headers=headers)
    assert first.status_code == 500
    assert (await client.get(f"/reservations/{rid}")).json()["state"] == "active"

    redelivered = await client.post("/payments/webhook/khalti", content=body, headers=headers)
    assert redelivered.status_code == 200
    assert redelivered.json() == {"received": True, "duplicate": False}
    assert len(calls) == 2

    status = await client.get(f"/reservations/{rid}")
    assert status.json()["state"] == "confirmed"
    assert status.json()["is_paid"] is True


@pytest.mark.asyncio
async def test_reserve_storage_failure_maps_to_500(client, schedule, monkeypatch):
    async def broken_apply(self, *args, **kwargs):
        raise OperationalError("UPDATE schedule_seats", {}, Exception("disk I/O error"))

    monkeypatch.setattr(SeatLedger, "_apply", broken_apply)
    resp = await _reserve(client, schedule, ["B1", "B2"])
    assert resp.status_code == 500
    assert "detail" in resp.json()

    monkeypatch.undo()
    seats = await client.get(f"/buses/{schedule.bus_id}/seats", params={"date": TRAVEL_DATE})
    assert seats.json()["held"] == []
    assert "B1" in seats.json()["available"] and "B2" in seats.json()["available"]


@pytest.mark.asyncio
async def test_ticket_lookups(client, schedule, monkeypatch, webhook_store):
    rid, started = await _checkout(client, schedule, monkeypatch, ["B3"], "pidx-lookup-1")
    ticket_id, booking_id = started["ticket_id"], started["booking_id"]

    by_id = await client.get(f"/payments/tickets/{ticket_id}")
    assert by_id.status_code == 200
    assert by_id.json()["booking_id"] == booking_id
    assert by_id.json()["seat_labels"] == ["B3"]
    assert by_id.json()["payment_status"] == "pending"
    assert by_id.json()["passenger_name"] == "Sita Gurung"

    by_booking = await client.get(f"/payments/tickets/by-booking/{booking_id}")
    assert by_booking.json()["id"] == ticket_id
    by_reservation = await client.get(f"/payments/tickets/by-reservation/{rid}")
    assert by_reservation.json()["id"] == ticket_id
    by_checkout_ref = await client.post("/payments/tickets/by-transaction", json={"reference": "pidx-lookup-1"})
    assert by_checkout_ref.json()["id"] == ticket_id

    body, headers = _signed_khalti({"pidx": "pidx-lookup-1", "status": "Completed", "transaction_id": "T-400"})
    assert (await client.post("/payments/webhook/khalti", content=body, headers=headers)).status_code == 200
    by_transaction = await client.post("/payments/tickets/by-transaction", json={"reference": "T-400"})
    assert by_transaction.status_code == 200
    assert by_transaction.json()["id"] == ticket_id
    assert by_transaction.json()["payment_status"] == "paid"

    assert (await client.get("/payments/tickets/9999")).status_code == 404
    assert (await client.get("/payments/tickets/by-booking/BK-NOPE")).status_code == 404
    assert (await client.get("/payments/tickets/by-reservation/missing")).status_code == 404
    assert (await client.post("/payments/tickets/by-transaction", json={"reference": "nope"})).status_code == 404
