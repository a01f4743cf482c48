"""Turns payment provider signals into Reservation Manager transitions.

completed                     -> confirm (idempotent)
refunded / expired / canceled -> void
pending                       -> nothing; the hold keeps running down its TTL
"""
import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select as sa_select

from seathold.config import settings
from seathold.metrics import PAYMENT_FAILURE, PAYMENT_SUCCESS
from seathold.models.models import Payment, PaymentStatus, ReservationState
from seathold.services.errors import (
    InvalidReservationRequest,
    PaymentNotFound,
    ReservationNotFound,
    SeatConflict,
)
from seathold.services.payment_gateway import PaymentOutcome, get_adapter
from seathold.services.reservation_store import utcnow
from seathold.services.schedules import get_schedule

logger = logging.getLogger(__name__)

# stored payment status -> outcome it records
FINAL_STATUSES = {
    "completed": PaymentOutcome.COMPLETED,
    "refunded": PaymentOutcome.REFUNDED,
    "canceled": PaymentOutcome.CANCELED,
    "failed": PaymentOutcome.EXPIRED,
}

_STATUS_FOR_OUTCOME = {
    PaymentOutcome.COMPLETED: "completed",
    PaymentOutcome.REFUNDED: "refunded",
    PaymentOutcome.CANCELED: "canceled",
    PaymentOutcome.EXPIRED: "failed",
}


class PaymentReconciler:
    def __init__(self, manager, session_factory=None):
        self.manager = manager
        self.session_factory = session_factory or manager.session_factory

    async def initiate(self, reservation_id: str, provider: str, passenger: Optional[Dict] = None,
                       amount=None, currency: Optional[str] = None) -> Dict:
        """Create the pending ticket for an active hold and start a provider checkout."""
        adapter = await get_adapter(provider)
        passenger = passenger or {}
        currency = currency or settings.DEFAULT_CURRENCY

        async with self.session_factory() as db, db.begin():
            reservation = await self.manager.store.get(db, reservation_id, for_update=True)
            if reservation is None:
                raise ReservationNotFound(reservation_id)
            if reservation.state != ReservationState.ACTIVE.value or reservation.expires_at <= utcnow():
                raise InvalidReservationRequest("Reservation %s is no longer active" % reservation_id)
            if amount is None:
                schedule = await get_schedule(db, reservation.schedule_id)
                amount = Decimal(schedule.fare or 0) * len(reservation.seat_labels)
            ticket = await self.manager.tickets.get_by_reservation(db, reservation.id)
            if ticket is None or ticket.payment_status != PaymentStatus.PENDING.value:
                ticket = await self.manager.tickets.create(
                    db, reservation, amount,
                    passenger_name=passenger.get("name"),
                    passenger_email=passenger.get("email"),
                    passenger_phone=passenger.get("phone"),
                )
            reservation.ticket_id = ticket.id

        # provider call stays outside the transaction
        checkout = await adapter.initiate(ticket, amount, currency)

        async with self.session_factory() as db, db.begin():
            db.add(Payment(
                ticket_id=ticket.id,
                amount=amount,
                currency=currency,
                provider=adapter.provider_name,
                provider_ref=checkout["provider_ref"],
                status="initiated",
                details=checkout.get("raw"),
            ))
        logger.info(
            "Initiated %s payment %s for ticket %s", adapter.provider_name, checkout["provider_ref"], ticket.booking_id,
            extra={"reservation_id": reservation_id, "ticket_id": ticket.id},
        )
        return {
            "reservation_id": reservation_id,
            "ticket_id": ticket.id,
            "booking_id": ticket.booking_id,
            "provider": adapter.provider_name,
            "provider_ref": checkout["provider_ref"],
            "checkout_url": checkout.get("checkout_url"),
            "amount": float(amount),
            "currency": currency,
        }

    async def verify(self, provider_ref: str) -> Dict:
        """Synchronous check with the provider. Already-final payments answer from the stored record."""
        payment = await self._payment(provider_ref)
        stored = FINAL_STATUSES.get(payment.status)
        if stored is not None:
            return await self._result(payment, stored, already_processed=True)
        adapter = await get_adapter(payment.provider)
        # PaymentLookupTimeout propagates; the hold stays active and the call can be retried
        found = await adapter.lookup(provider_ref)
        return await self.apply(provider_ref, found["outcome"], transaction_id=found.get("transaction_id"), details=found.get("raw"))

    async def apply(self, provider_ref: str, outcome, transaction_id: Optional[str] = None, details: Optional[Dict] = None) -> Dict:
        outcome = PaymentOutcome(outcome)
        payment = await self._payment(provider_ref)

        if outcome == PaymentOutcome.PENDING:
            logger.info("Payment %s still pending", provider_ref)
            return await self._result(payment, outcome)
        if payment.status == "refunded" and outcome != PaymentOutcome.REFUNDED:
            logger.warning("Ignoring %s for refunded payment %s", outcome.value, provider_ref)
            return await self._result(payment, PaymentOutcome.REFUNDED, already_processed=True)

        if outcome == PaymentOutcome.COMPLETED:
            try:
                confirmed = await self.manager.confirm(ticket_id=payment.ticket_id)
            except SeatConflict as exc:
                logger.error(
                    "Payment %s captured but seats %s were taken; needs manual refund", provider_ref, exc.seats,
                    extra={"ticket_id": payment.ticket_id},
                )
                await self._record(provider_ref, outcome, transaction_id, details, needs_manual_refund=True)
                PAYMENT_FAILURE.labels(provider=payment.provider).inc()
                raise
            await self._record(provider_ref, outcome, transaction_id, details)
            if not confirmed.already_confirmed:
                PAYMENT_SUCCESS.labels(provider=payment.provider).inc()
            return await self._result(payment, outcome, already_processed=confirmed.already_confirmed)

        ticket_status = PaymentStatus.REFUNDED if outcome == PaymentOutcome.REFUNDED else PaymentStatus.CANCELED
        async with self.session_factory() as db:
            ticket = await self.manager.tickets.get(db, payment.ticket_id)
        if ticket is not None and ticket.payment_status == PaymentStatus.PAID.value and outcome != PaymentOutcome.REFUNDED:
            # a stale attempt failing after another attempt already paid must not cancel the ticket
            logger.info("Payment %s %s but ticket %s is already paid", provider_ref, outcome.value, ticket.id)
        else:
            await self.manager.void(payment.ticket_id, ticket_status)
        await self._record(provider_ref, outcome, transaction_id, details)
        PAYMENT_FAILURE.labels(provider=payment.provider).inc()
        return await self._result(payment, outcome)

    async def _payment(self, provider_ref: str) -> Payment:
        async with self.session_factory() as db:
            res = await db.execute(sa_select(Payment).where(Payment.provider_ref == provider_ref))
            payment = res.scalars().first()
        if payment is None:
            raise PaymentNotFound("Payment not found: %s" % provider_ref)
        return payment

    async def _record(self, provider_ref: str, outcome: PaymentOutcome, transaction_id, details, needs_manual_refund=False):
        async with self.session_factory() as db, db.begin():
            res = await db.execute(sa_select(Payment).where(Payment.provider_ref == provider_ref).with_for_update())
            payment = res.scalars().first()
            payment.status = _STATUS_FOR_OUTCOME[outcome]
            if transaction_id is not None:
                payment.transaction_id = str(transaction_id)
            merged = dict(payment.details or {})
            if details:
                merged.update(details)
            if needs_manual_refund:
                merged["needs_manual_refund"] = True
            payment.details = merged
            if outcome == PaymentOutcome.COMPLETED and payment.paid_at is None:
                payment.paid_at = utcnow()
            if outcome == PaymentOutcome.REFUNDED:
                payment.refunded_at = utcnow()

    async def _result(self, payment: Payment, outcome: PaymentOutcome, already_processed: bool = False) -> Dict:
        async with self.session_factory() as db:
            ticket = await self.manager.tickets.get(db, payment.ticket_id)
        return {
            "provider_ref": payment.provider_ref,
            "outcome": outcome.value,
            "ticket_id": payment.ticket_id,
            "booking_id": ticket.booking_id if ticket else None,
            "reservation_id": ticket.reservation_id if ticket else None,
            "payment_status": ticket.payment_status if ticket else None,
            "already_processed": already_processed,
        }
