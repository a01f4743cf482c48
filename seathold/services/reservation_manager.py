"""
Reservation Manager: the seat-hold state machine.

    ACTIVE -> CONFIRMED | RELEASED | EXPIRED

reserve, release, expire and confirm may run concurrently from request
handlers, expiry timers, the reconciliation sweep and payment callbacks.
Two mechanisms keep them apart:

* a per-(bus, date) ``asyncio.Lock`` serialises them inside one process;
* every path re-reads the reservation with ``SELECT ... FOR UPDATE`` and the
  Seat Ledger only moves seats with conditional updates, so processes sharing
  the database still observe each other's committed writes.

Confirm writes the paid ticket, the permanent seat bookings and the CONFIRMED
state in one transaction; release/expire check for that paid ticket inside
their own transaction before touching seats. Whichever commits second sees the
first.
"""
import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from seathold.config import settings
from seathold.metrics import (
    RESERVATION_RESOLUTIONS,
    RESERVE_ATTEMPTS,
    RESERVE_LATENCY,
    SWEEP_ERRORS,
    SWEEP_RECOVERED,
)
from seathold.models.models import PaymentStatus, Reservation, ReservationState, SeatStatus
from seathold.services.errors import (
    InvalidReservationRequest,
    LedgerWriteFailure,
    ReservationError,
    ReservationNotFound,
    SeatConflict,
    UnknownSeats,
)
from seathold.services.expiry_scheduler import ExpiryScheduler
from seathold.services.reservation_store import ReservationStore, utcnow
from seathold.services.schedules import find_schedule, get_schedule, normalize_date
from seathold.services.seat_ledger import SeatLedger, SeatState
from seathold.services.tickets import TicketStore

logger = logging.getLogger(__name__)

ACTIVE = ReservationState.ACTIVE.value


@dataclass
class ReleaseOutcome:
    reservation_id: Optional[str]
    resolved: bool = False
    released: bool = False
    state: Optional[str] = None
    seats_released: List[str] = field(default_factory=list)
    seats_retained: List[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class ConfirmOutcome:
    confirmed: bool
    reservation_id: Optional[str]
    ticket_id: Optional[int]
    booking_id: Optional[str]
    seat_labels: List[str]
    already_confirmed: bool = False


@dataclass
class ReservationStatus:
    reservation_id: str
    state: str
    expired: bool
    remaining_seconds: int
    is_paid: bool
    expires_at: datetime
    ticket_id: Optional[int] = None


class ReservationManager:
    def __init__(
        self,
        session_factory,
        scheduler: Optional[ExpiryScheduler] = None,
        ledger: Optional[SeatLedger] = None,
        store: Optional[ReservationStore] = None,
        tickets: Optional[TicketStore] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler or ExpiryScheduler()
        self.scheduler.bind(self.expire)
        self.ledger = ledger or SeatLedger()
        self.store = store or ReservationStore()
        self.tickets = tickets or TicketStore()
        self.ttl_seconds = settings.RESERVATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock
        # entries vanish once no holder or waiter references the lock
        self._locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, bus_id: int, travel_date: str) -> asyncio.Lock:
        key = (bus_id, travel_date)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # -- reserve ---------------------------------------------------------

    async def reserve(self, bus_id: int, travel_date, seat_labels: List[str]) -> Reservation:
        travel_date = normalize_date(travel_date)
        if travel_date is None:
            raise InvalidReservationRequest("A travel date is required")
        labels = list(dict.fromkeys(seat_labels or []))
        if not labels:
            raise InvalidReservationRequest("At least one seat label is required")

        start = time.perf_counter()
        async with self._lock(bus_id, travel_date):
            try:
                async with self.session_factory() as db, db.begin():
                    schedule = await find_schedule(db, bus_id, travel_date)
                    unknown = [label for label in labels if label not in schedule.seat_labels]
                    if unknown:
                        raise UnknownSeats(unknown)

                    state = await self.ledger.get_seat_state(db, schedule, travel_date)
                    taken = set(state.held) | set(state.booked) | set(state.out_of_service)
                    conflicts = [label for label in labels if label in taken]
                    if conflicts:
                        raise SeatConflict(conflicts)

                    permanent = await self.ledger.is_permanently_booked(db, schedule.id, travel_date, labels)
                    if permanent:
                        raise SeatConflict(permanent)

                    reservation = await self.store.create(
                        db, self.ledger, schedule, travel_date, labels, self.ttl_seconds, now=self.clock()
                    )
            except SeatConflict as exc:
                RESERVE_ATTEMPTS.labels(result="conflict").inc()
                logger.info("Seat conflict on bus %s %s: %s", bus_id, travel_date, exc.seats)
                raise
            except LedgerWriteFailure:
                RESERVE_ATTEMPTS.labels(result="error").inc()
                raise
            except SQLAlchemyError as exc:
                RESERVE_ATTEMPTS.labels(result="error").inc()
                logger.exception("Reserve failed on bus %s %s", bus_id, travel_date)
                raise LedgerWriteFailure(str(exc)) from exc

        RESERVE_ATTEMPTS.labels(result="success").inc()
        RESERVE_LATENCY.observe(time.perf_counter() - start)
        self.scheduler.arm(reservation.id, self.ttl_seconds)
        logger.info(
            "Reserved seats %s on bus %s for %s",
            labels, bus_id, travel_date,
            extra={"reservation_id": reservation.id, "expires_at": reservation.expires_at.isoformat()},
        )
        return reservation

    # -- release / expire ------------------------------------------------

    async def release(self, reservation_id: str) -> ReleaseOutcome:
        """Explicit cancellation by the holder; unknown or resolved reservations are a no-op."""
        return await self._resolve(reservation_id, ReservationState.RELEASED)

    async def expire(self, reservation_id: str) -> ReleaseOutcome:
        """Timer and sweep entry point; re-reads the reservation before acting."""
        return await self._resolve(reservation_id, ReservationState.EXPIRED)

    async def _resolve(self, reservation_id: str, terminal: ReservationState) -> ReleaseOutcome:
        peek = await self._peek(reservation_id)
        if peek is None:
            logger.debug("Reservation %s not found; treating as already resolved", reservation_id)
            return ReleaseOutcome(reservation_id, reason="not_found")
        if peek.state != ACTIVE:
            return ReleaseOutcome(reservation_id, state=peek.state, reason="already_resolved")

        self.scheduler.cancel(reservation_id)
        async with self._lock(peek.bus_id, peek.travel_date):
            try:
                async with self.session_factory() as db, db.begin():
                    reservation = await self.store.get(db, reservation_id, for_update=True)
                    if reservation is None or reservation.state != ACTIVE:
                        return ReleaseOutcome(
                            reservation_id, state=reservation.state if reservation else None, reason="already_resolved"
                        )
                    outcome = await self._release_locked(db, reservation, terminal)
            except SQLAlchemyError as exc:
                logger.exception("Failed to resolve reservation %s", reservation_id)
                raise LedgerWriteFailure(str(exc)) from exc

        RESERVATION_RESOLUTIONS.labels(outcome=outcome.state).inc()
        logger.info(
            "Reservation %s -> %s (released=%s retained=%s)",
            reservation_id, outcome.state, outcome.seats_released, outcome.seats_retained,
            extra={"reservation_id": reservation_id},
        )
        return outcome

    async def _release_locked(self, db, reservation: Reservation, terminal: ReservationState) -> ReleaseOutcome:
        schedule = await get_schedule(db, reservation.schedule_id)
        seats = list(reservation.seat_labels or [])

        paid = await self.tickets.find_paid_for_reservation(db, reservation)
        linked = paid is not None and (paid.reservation_id == reservation.id or paid.id == reservation.ticket_id)
        if linked:
            # payment already finalised this hold: keep every seat, reinforce the permanent booking
            reinforced = await self.ledger.mark_seats(
                db, schedule, reservation.travel_date, seats, SeatStatus.BOOKED,
                reservation_id=reservation.id, ticket_id=paid.id, booking_id=paid.booking_id, permanent=True,
            )
            if not reinforced:
                logger.error(
                    "Paid ticket %s covers reservation %s but seats %s are owned elsewhere",
                    paid.id, reservation.id, reinforced.excluded,
                )
            await self.store.mark_confirmed(db, reservation, paid.id)
            return ReleaseOutcome(
                reservation.id, resolved=True, state=ReservationState.CONFIRMED.value,
                seats_retained=seats, reason="paid",
            )

        retained = []
        if paid is not None:
            # another paid ticket overlaps this hold; those seats are not ours to release
            owned_elsewhere = set(paid.seat_labels or [])
            retained = [label for label in seats if label in owned_elsewhere]
            seats = [label for label in seats if label not in owned_elsewhere]

        result = await self.ledger.mark_seats(
            db, schedule, reservation.travel_date, seats, SeatStatus.AVAILABLE, reservation_id=reservation.id
        )
        await self.store.finish(db, reservation, terminal)
        return ReleaseOutcome(
            reservation.id,
            resolved=True,
            released=True,
            state=ReservationState(terminal).value,
            seats_released=result.changed,
            seats_retained=retained + result.excluded,
            reason=ReservationState(terminal).value,
        )

    # -- confirm / void ----------------------------------------------------

    async def confirm(
        self,
        reservation_id: Optional[str] = None,
        ticket_id: Optional[int] = None,
        seat_labels: Optional[List[str]] = None,
        bus_id: Optional[int] = None,
    ) -> ConfirmOutcome:
        """Make a paid hold permanent. Safe to call repeatedly for the same payment."""
        if not reservation_id and ticket_id is None:
            raise InvalidReservationRequest("reservation_id or ticket_id is required")

        async with self.session_factory() as db:
            reservation = await self.store.get(db, reservation_id) if reservation_id else None
            ticket = await self.tickets.get(db, ticket_id) if ticket_id is not None else None
            if ticket_id is not None and ticket is None:
                raise ReservationNotFound("ticket %s" % ticket_id)
            if ticket is None and reservation is not None:
                ticket = await self.tickets.get_by_reservation(db, reservation.id)
            if reservation is None and ticket is not None and ticket.reservation_id:
                reservation = await self.store.get(db, ticket.reservation_id)
        if reservation is None and ticket is None:
            raise ReservationNotFound(reservation_id)

        owner = reservation or ticket
        if bus_id is not None and bus_id != owner.bus_id:
            raise InvalidReservationRequest("Bus %s does not match reservation bus %s" % (bus_id, owner.bus_id))
        rid = reservation.id if reservation is not None else None
        tid = ticket.id if ticket is not None else None

        if rid is not None:
            self.scheduler.cancel(rid)
        async with self._lock(owner.bus_id, owner.travel_date):
            try:
                async with self.session_factory() as db, db.begin():
                    outcome = await self._confirm_locked(db, rid, tid, seat_labels)
            except SQLAlchemyError as exc:
                logger.exception("Failed to confirm reservation %s / ticket %s", rid, tid)
                raise LedgerWriteFailure(str(exc)) from exc

        if not outcome.already_confirmed:
            RESERVATION_RESOLUTIONS.labels(outcome=ReservationState.CONFIRMED.value).inc()
        logger.info(
            "Confirmed seats %s (booking %s)", outcome.seat_labels, outcome.booking_id,
            extra={"reservation_id": rid, "ticket_id": tid, "already_confirmed": outcome.already_confirmed},
        )
        return outcome

    async def _confirm_locked(self, db, rid, tid, seat_labels) -> ConfirmOutcome:
        reservation = await self.store.get(db, rid, for_update=True) if rid is not None else None
        ticket = await self.tickets.get(db, tid, for_update=True) if tid is not None else None
        owner = reservation or ticket
        if owner is None:
            raise ReservationNotFound(rid)

        seats = list(dict.fromkeys(
            seat_labels
            or (ticket.seat_labels if ticket is not None else None)
            or (reservation.seat_labels if reservation is not None else None)
            or []
        ))
        if not seats:
            raise InvalidReservationRequest("No seats to confirm")

        was_paid = ticket is not None and ticket.payment_status == PaymentStatus.PAID.value
        booking_id = None
        if ticket is not None:
            self.tickets.mark_paid(ticket)
            if not ticket.seat_labels:
                ticket.seat_labels = seats
            booking_id = ticket.booking_id
            await db.flush()

        if ticket is not None and ticket.schedule_id is not None:
            schedule = await get_schedule(db, ticket.schedule_id)
        elif reservation is not None:
            schedule = await get_schedule(db, reservation.schedule_id)
        else:
            schedule = await find_schedule(db, owner.bus_id, owner.travel_date)

        result = await self.ledger.mark_seats(
            db, schedule, owner.travel_date, seats, SeatStatus.BOOKED,
            reservation_id=rid, ticket_id=tid, booking_id=booking_id, permanent=True,
        )
        if not result:
            raise SeatConflict(result.excluded, "Seats no longer available for confirmation: %s" % ", ".join(result.excluded))

        if reservation is not None:
            if reservation.state == ACTIVE:
                await self.store.mark_confirmed(db, reservation, tid)
            elif reservation.state != ReservationState.CONFIRMED.value:
                logger.warning(
                    "Late confirmation for reservation %s in state %s; seats re-booked",
                    reservation.id, reservation.state,
                )
            elif tid is not None and reservation.ticket_id is None:
                reservation.ticket_id = tid

        return ConfirmOutcome(
            confirmed=True,
            reservation_id=rid,
            ticket_id=tid,
            booking_id=booking_id,
            seat_labels=seats,
            already_confirmed=not result.changed and (ticket is None or was_paid),
        )

    async def void(self, ticket_id: int, payment_status: PaymentStatus = PaymentStatus.CANCELED) -> ReleaseOutcome:
        """Refund/cancel path: the ticket is canceled and its seats return to available."""
        payment_status = PaymentStatus(payment_status)
        async with self.session_factory() as db:
            ticket = await self.tickets.get(db, ticket_id)
        if ticket is None:
            raise ReservationNotFound("ticket %s" % ticket_id)
        rid = ticket.reservation_id
        if rid:
            self.scheduler.cancel(rid)

        async with self._lock(ticket.bus_id, ticket.travel_date):
            try:
                async with self.session_factory() as db, db.begin():
                    ticket = await self.tickets.get(db, ticket_id, for_update=True)
                    reservation = await self.store.get(db, rid, for_update=True) if rid else None
                    if ticket.payment_status == payment_status.value:
                        return ReleaseOutcome(rid, state=reservation.state if reservation else None, reason="already_void")

                    self.tickets.mark_void(ticket, payment_status)
                    if ticket.schedule_id is not None:
                        schedule = await get_schedule(db, ticket.schedule_id)
                    else:
                        schedule = await find_schedule(db, ticket.bus_id, ticket.travel_date)
                    seats = list(ticket.seat_labels or (reservation.seat_labels if reservation is not None else []))
                    result = await self.ledger.mark_seats(
                        db, schedule, ticket.travel_date, seats, SeatStatus.AVAILABLE,
                        ticket_id=ticket.id, reservation_id=rid,
                    )
                    state = reservation.state if reservation is not None else None
                    if reservation is not None and reservation.state == ACTIVE:
                        await self.store.finish(db, reservation, ReservationState.RELEASED)
                        state = ReservationState.RELEASED.value
            except SQLAlchemyError as exc:
                logger.exception("Failed to void ticket %s", ticket_id)
                raise LedgerWriteFailure(str(exc)) from exc

        RESERVATION_RESOLUTIONS.labels(outcome="voided").inc()
        logger.info(
            "Ticket %s %s; released seats %s", ticket_id, payment_status.value, result.changed,
            extra={"reservation_id": rid, "ticket_id": ticket_id},
        )
        return ReleaseOutcome(
            rid, resolved=True, released=True, state=state,
            seats_released=result.changed, seats_retained=result.excluded, reason=payment_status.value,
        )

    # -- queries -----------------------------------------------------------

    async def status(self, reservation_id: str) -> ReservationStatus:
        async with self.session_factory() as db:
            reservation = await self.store.get(db, reservation_id)
            if reservation is None:
                raise ReservationNotFound(reservation_id)
            is_paid = reservation.state == ReservationState.CONFIRMED.value
            if not is_paid:
                is_paid = await self.tickets.find_paid_for_reservation(db, reservation) is not None

        now = self.clock()
        expired = not is_paid and (reservation.state != ACTIVE or now >= reservation.expires_at)
        remaining = 0
        if reservation.state == ACTIVE and not expired:
            remaining = max(0, int((reservation.expires_at - now).total_seconds()))
        return ReservationStatus(
            reservation_id=reservation.id,
            state=reservation.state,
            expired=expired,
            remaining_seconds=remaining,
            is_paid=is_paid,
            expires_at=reservation.expires_at,
            ticket_id=reservation.ticket_id,
        )

    async def seat_state(self, bus_id: int, travel_date=None) -> SeatState:
        travel_date = normalize_date(travel_date)
        async with self.session_factory() as db:
            schedule = await find_schedule(db, bus_id, travel_date)
            return await self.ledger.get_seat_state(db, schedule, travel_date)

    async def permanent_bookings(self, schedule_id: int) -> List[Dict]:
        async with self.session_factory() as db:
            await get_schedule(db, schedule_id)
            return await self.ledger.permanent_bookings(db, schedule_id)

    # -- recovery ------------------------------------------------------------

    async def rearm(self) -> int:
        """Rebuild in-process timers from durable expiry timestamps (process start)."""
        async with self.session_factory() as db:
            active = await self.store.list_active(db)
        return self.scheduler.rearm(active, self.clock())

    async def sweep_expired(self, grace_seconds: Optional[int] = None) -> int:
        """Expire every ACTIVE reservation past its TTL plus grace; the backstop for lost timers."""
        grace = settings.SWEEP_GRACE_SECONDS if grace_seconds is None else grace_seconds
        cutoff = self.clock() - timedelta(seconds=grace)
        async with self.session_factory() as db:
            overdue = await self.store.list_overdue(db, cutoff)

        recovered = 0
        for reservation_id in overdue:
            try:
                outcome = await self.expire(reservation_id)
            except Exception:
                SWEEP_ERRORS.inc()
                logger.exception("Sweep failed to expire reservation %s", reservation_id)
                continue
            if outcome.resolved:
                recovered += 1
        if recovered:
            SWEEP_RECOVERED.inc(recovered)
            logger.info("Sweep resolved %d overdue reservations", recovered)
        return recovered

    async def purge_resolved(self, retention_seconds: Optional[int] = None) -> int:
        retention = settings.RESERVATION_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        async with self.session_factory() as db, db.begin():
            purged = await self.store.purge_resolved(db, self.clock() - timedelta(seconds=retention))
        if purged:
            logger.info("Purged %d resolved reservations", purged)
        return purged

    async def repair_permanent_bookings(self) -> Dict:
        """Make sure every paid ticket's seats are booked and permanent for its journey date."""
        async with self.session_factory() as db:
            paid = await self.tickets.list_paid(db)

        stats = {"processed": 0, "repaired": 0, "conflicts": 0, "errors": []}
        for ticket in paid:
            stats["processed"] += 1
            try:
                async with self._lock(ticket.bus_id, ticket.travel_date):
                    async with self.session_factory() as db, db.begin():
                        if ticket.schedule_id is not None:
                            schedule = await get_schedule(db, ticket.schedule_id)
                        else:
                            schedule = await find_schedule(db, ticket.bus_id, ticket.travel_date)
                        result = await self.ledger.mark_seats(
                            db, schedule, ticket.travel_date, ticket.seat_labels or [], SeatStatus.BOOKED,
                            reservation_id=ticket.reservation_id, ticket_id=ticket.id,
                            booking_id=ticket.booking_id, permanent=True,
                        )
            except ReservationError as exc:
                stats["conflicts"] += 1
                stats["errors"].append("ticket %s: %s" % (ticket.id, exc))
                logger.error("Could not repair seats for ticket %s: %s", ticket.id, exc)
                continue
            if not result:
                stats["conflicts"] += 1
                stats["errors"].append("ticket %s: seats %s owned elsewhere" % (ticket.id, result.excluded))
                logger.error("Paid ticket %s seats %s are owned elsewhere", ticket.id, result.excluded)
            elif result.changed:
                stats["repaired"] += 1
        logger.info("Permanent booking repair finished", extra={k: v for k, v in stats.items() if k != "errors"})
        return stats

    async def _peek(self, reservation_id: str) -> Optional[Reservation]:
        async with self.session_factory() as db:
            return await self.store.get(db, reservation_id)
