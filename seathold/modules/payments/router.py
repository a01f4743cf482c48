import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from seathold.deps import get_reconciler
from seathold.schemas.payment import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentResult,
    PaymentVerifyRequest,
    TicketLookupRequest,
    TicketResponse,
    WebhookAck,
)
from seathold.services.errors import PaymentError, SeatConflict
from seathold.services.payment_gateway import forget_event, get_adapter, is_event_processed, mark_event_processed
from seathold.services.payment_reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(req: PaymentInitiateRequest, reconciler: PaymentReconciler = Depends(get_reconciler)):
    result = await reconciler.initiate(
        req.reservation_id,
        req.provider,
        passenger=req.passenger.model_dump(),
        amount=req.amount,
        currency=req.currency,
    )
    return PaymentInitiateResponse(**result)


@router.post("/verify", response_model=PaymentResult)
async def verify_payment(req: PaymentVerifyRequest, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Synchronous lookup with the provider; safe to retry after a 503."""
    return PaymentResult(**await reconciler.verify(req.provider_ref))


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def payment_webhook(provider: str, request: Request, reconciler: PaymentReconciler = Depends(get_reconciler)):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        adapter = await get_adapter(provider)
    except PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    # verify signature
    valid = await adapter.verify_signature(headers, body)
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook body")

    event = adapter.parse_webhook(payload)
    event_id = event.get("event_id")
    if not event_id or not event.get("provider_ref"):
        # cannot deduplicate without id
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id for idempotency")

    # check idempotency/replay
    if await is_event_processed(adapter.provider_name, str(event_id)):
        return WebhookAck(received=True, duplicate=True)
    added = await mark_event_processed(adapter.provider_name, str(event_id))
    if not added:
        # race: someone else processed
        return WebhookAck(received=True, duplicate=True)

    try:
        await reconciler.apply(
            event["provider_ref"], event["outcome"], transaction_id=event.get("transaction_id"), details=event.get("raw")
        )
    except SeatConflict:
        # captured but the seats went elsewhere; flagged for manual refund, redelivery cannot help
        raise
    except Exception:
        # unknown reference, provider outage or storage failure: let the provider redeliver
        await forget_event(adapter.provider_name, str(event_id))
        raise
    logger.info("Processed %s webhook %s", adapter.provider_name, event_id, extra={"provider_ref": event["provider_ref"]})
    return WebhookAck(received=True)


# Ticket retrieval after checkout
@router.get("/tickets/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: int, reconciler: PaymentReconciler = Depends(get_reconciler)):
    async with reconciler.session_factory() as db:
        ticket = await reconciler.manager.tickets.get(db, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


@router.get("/tickets/by-booking/{booking_id}", response_model=TicketResponse)
async def get_ticket_by_booking(booking_id: str, reconciler: PaymentReconciler = Depends(get_reconciler)):
    async with reconciler.session_factory() as db:
        ticket = await reconciler.manager.tickets.get_by_booking_id(db, booking_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


@router.get("/tickets/by-reservation/{reservation_id}", response_model=TicketResponse)
async def get_ticket_by_reservation(reservation_id: str, reconciler: PaymentReconciler = Depends(get_reconciler)):
    async with reconciler.session_factory() as db:
        ticket = await reconciler.manager.tickets.get_by_reservation(db, reservation_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No ticket for this reservation")
    return ticket


@router.post("/tickets/by-transaction", response_model=TicketResponse)
async def get_ticket_by_transaction(req: TicketLookupRequest, reconciler: PaymentReconciler = Depends(get_reconciler)):
    async with reconciler.session_factory() as db:
        ticket = await reconciler.manager.tickets.get_by_payment_reference(db, req.reference)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No ticket for this payment reference")
    return ticket
