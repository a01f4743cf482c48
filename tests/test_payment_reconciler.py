import hashlib
import hmac

import pytest
from sqlalchemy import select as sa_select

from seathold.config import settings
from seathold.models.models import Payment, PaymentStatus, ReservationState
from seathold.services.errors import InvalidReservationRequest, PaymentLookupTimeout, PaymentNotFound, ReservationNotFound
from seathold.services.payment_gateway import FlutterwaveAdapter, KhaltiAdapter, PaymentOutcome
from seathold.services.payment_reconciler import PaymentReconciler
from seathold.services.tickets import TicketStore

TRAVEL_DATE = "2024-06-01"
PASSENGER = {"name": "Ram Thapa", "email": "ram@example.com", "phone": "9811111111"}


@pytest.fixture
def khalti(monkeypatch):
    """Khalti stand-in: initiate hands out sequential pidx values, lookup answers from ``statuses``."""
    calls = {"lookup": 0, "statuses": {}}

    async def fake_initiate(self, ticket, amount, currency):
        pidx = "pidx-%s" % ticket.id
        return {"provider": "khalti", "provider_ref": pidx, "checkout_url": "https://pay.khalti.com/?pidx=" + pidx, "raw": {"pidx": pidx}}

    async def fake_lookup(self, provider_ref):
        calls["lookup"] += 1
        status = calls["statuses"].get(provider_ref, "Pending")
        if status == "timeout":
            raise PaymentLookupTimeout("khalti did not answer in time")
        return {"outcome": self.to_outcome(status), "transaction_id": "txn-%s" % provider_ref, "raw": {"status": status}}

    monkeypatch.setattr(KhaltiAdapter, "initiate", fake_initiate)
    monkeypatch.setattr(KhaltiAdapter, "lookup", fake_lookup)
    return calls


async def _start(manager, reconciler, schedule, seats):
    reservation = await manager.reserve(schedule.bus_id, TRAVEL_DATE, seats)
    started = await reconciler.initiate(reservation.id, "khalti", passenger=PASSENGER)
    return reservation, started


@pytest.mark.asyncio
async def test_initiate_creates_pending_ticket_and_payment(manager, schedule, khalti, session_factory):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["A1", "A2"])

    assert started["provider_ref"] == "pidx-%s" % started["ticket_id"]
    assert started["booking_id"].startswith("BK-")
    assert started["amount"] == 2400.0
    assert started["currency"] == settings.DEFAULT_CURRENCY

    async with session_factory() as db:
        ticket = await TicketStore().get(db, started["ticket_id"])
        payment = (await db.execute(sa_select(Payment).where(Payment.provider_ref == started["provider_ref"]))).scalars().first()
    assert ticket.reservation_id == reservation.id
    assert ticket.payment_status == PaymentStatus.PENDING.value
    assert ticket.passenger_name == "Ram Thapa"
    assert payment.status == "initiated"


@pytest.mark.asyncio
async def test_initiate_requires_active_reservation(manager, schedule, khalti):
    reconciler = PaymentReconciler(manager)
    with pytest.raises(ReservationNotFound):
        await reconciler.initiate("missing", "khalti", passenger=PASSENGER)

    reservation = await manager.reserve(schedule.bus_id, TRAVEL_DATE, ["B1"])
    await manager.release(reservation.id)
    with pytest.raises(InvalidReservationRequest):
        await reconciler.initiate(reservation.id, "khalti", passenger=PASSENGER)


@pytest.mark.asyncio
async def test_verify_completed_confirms_once(manager, schedule, khalti, session_factory):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["A3"])
    khalti["statuses"][started["provider_ref"]] = "Completed"

    first = await reconciler.verify(started["provider_ref"])
    second = await reconciler.verify(started["provider_ref"])

    assert first["outcome"] == PaymentOutcome.COMPLETED.value
    assert first["payment_status"] == PaymentStatus.PAID.value
    assert first["already_processed"] is False
    assert second["already_processed"] is True
    assert khalti["lookup"] == 1

    state = await manager.seat_state(schedule.bus_id, TRAVEL_DATE)
    assert state.permanently_booked == ["A3"]
    assert (await manager.status(reservation.id)).state == ReservationState.CONFIRMED.value

    async with session_factory() as db:
        payment = (await db.execute(sa_select(Payment).where(Payment.provider_ref == started["provider_ref"]))).scalars().first()
    assert payment.status == "completed"
    assert payment.transaction_id == "txn-%s" % started["provider_ref"]
    assert payment.paid_at is not None


@pytest.mark.asyncio
async def test_lookup_timeout_leaves_hold_active(manager, schedule, khalti):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["A4"])
    khalti["statuses"][started["provider_ref"]] = "timeout"

    with pytest.raises(PaymentLookupTimeout):
        await reconciler.verify(started["provider_ref"])

    status = await manager.status(reservation.id)
    assert status.state == ReservationState.ACTIVE.value
    assert manager.scheduler.is_armed(reservation.id)


@pytest.mark.asyncio
async def test_pending_outcome_changes_nothing(manager, schedule, khalti):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["B2"])

    result = await reconciler.verify(started["provider_ref"])
    assert result["outcome"] == PaymentOutcome.PENDING.value
    state = await manager.seat_state(schedule.bus_id, TRAVEL_DATE)
    assert state.held == ["B2"]


@pytest.mark.asyncio
async def test_refund_after_completion_voids_ticket(manager, schedule, khalti, session_factory):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["B3", "B4"])
    await reconciler.apply(started["provider_ref"], PaymentOutcome.COMPLETED)

    result = await reconciler.apply(started["provider_ref"], PaymentOutcome.REFUNDED)
    assert result["payment_status"] == PaymentStatus.REFUNDED.value

    state = await manager.seat_state(schedule.bus_id, TRAVEL_DATE)
    assert state.permanently_booked == []
    assert "B3" in state.available and "B4" in state.available

    # a late "completed" for a refunded payment must not re-book
    late = await reconciler.apply(started["provider_ref"], PaymentOutcome.COMPLETED)
    assert late["outcome"] == PaymentOutcome.REFUNDED.value
    state = await manager.seat_state(schedule.bus_id, TRAVEL_DATE)
    assert state.booked == []


@pytest.mark.asyncio
async def test_user_canceled_releases_hold(manager, schedule, khalti):
    reconciler = PaymentReconciler(manager)
    reservation, started = await _start(manager, reconciler, schedule, ["A1"])
    khalti["statuses"][started["provider_ref"]] = "User canceled"

    result = await reconciler.verify(started["provider_ref"])
    assert result["outcome"] == PaymentOutcome.CANCELED.value
    assert (await manager.status(reservation.id)).state == ReservationState.RELEASED.value
    state = await manager.seat_state(schedule.bus_id, TRAVEL_DATE)
    assert "A1" in state.available


@pytest.mark.asyncio
async def test_unknown_payment_reference(manager):
    with pytest.raises(PaymentNotFound):
        await PaymentReconciler(manager).verify("nope")


def test_khalti_webhook_parsing():
    adapter = KhaltiAdapter()
    event = adapter.parse_webhook({"pidx": "pidx-9", "status": "Completed", "transaction_id": "T-1"})
    assert event["provider_ref"] == "pidx-9"
    assert event["event_id"] == "T-1"
    assert event["outcome"] == PaymentOutcome.COMPLETED
    assert adapter.to_outcome("Expired") == PaymentOutcome.EXPIRED
    assert adapter.to_outcome("something new") == PaymentOutcome.PENDING


@pytest.mark.asyncio
async def test_signature_verification(monkeypatch):
    monkeypatch.setattr(settings, "FLUTTERWAVE_SECRET", "flw_secret")
    adapter = FlutterwaveAdapter()
    body = b'{"id": "evt-1"}'
    good = hmac.new(b"flw_secret", body, hashlib.sha256).hexdigest()
    assert await adapter.verify_signature({"x-flutterwave-signature": good}, body) is True
    assert await adapter.verify_signature({"x-flutterwave-signature": "0" * 64}, body) is False

    monkeypatch.setattr(settings, "FLUTTERWAVE_SECRET", "")
    assert await adapter.verify_signature({"x-flutterwave-signature": good}, body) is False

    event = adapter.parse_webhook({"id": "evt-1", "data": {"tx_ref": "flw_abc", "status": "successful", "id": 42}})
    assert event["provider_ref"] == "flw_abc"
    assert event["outcome"] == PaymentOutcome.COMPLETED
