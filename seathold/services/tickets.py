from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seathold.models.models import Payment, PaymentStatus, Reservation, Ticket, TicketStatus

BOOKING_ID_PREFIX = "BK-"


def new_booking_id() -> str:
    return BOOKING_ID_PREFIX + uuid4().hex[:16].upper()


class TicketStore:
    """Read/write access to tickets, the durable proof of seat ownership once paid."""

    async def create(self, db: AsyncSession, reservation: Reservation, price, passenger_name: str = None,
                     passenger_email: str = None, passenger_phone: str = None) -> Ticket:
        ticket = Ticket(
            booking_id=new_booking_id(),
            reservation_id=reservation.id,
            bus_id=reservation.bus_id,
            schedule_id=reservation.schedule_id,
            travel_date=reservation.travel_date,
            seat_labels=list(reservation.seat_labels),
            passenger_name=passenger_name,
            passenger_email=passenger_email,
            passenger_phone=passenger_phone,
            price=price,
            status=TicketStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        db.add(ticket)
        await db.flush()
        return ticket

    async def get(self, db: AsyncSession, ticket_id: int, for_update: bool = False) -> Optional[Ticket]:
        stmt = sa_select(Ticket).where(Ticket.id == ticket_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await db.execute(stmt)
        return res.scalars().first()

    async def get_by_reservation(self, db: AsyncSession, reservation_id: str) -> Optional[Ticket]:
        stmt = sa_select(Ticket).where(Ticket.reservation_id == reservation_id).order_by(Ticket.id.desc())
        res = await db.execute(stmt)
        return res.scalars().first()

    async def get_by_booking_id(self, db: AsyncSession, booking_id: str) -> Optional[Ticket]:
        res = await db.execute(sa_select(Ticket).where(Ticket.booking_id == booking_id))
        return res.scalars().first()

    async def get_by_payment_reference(self, db: AsyncSession, reference: str) -> Optional[Ticket]:
        """Ticket behind a provider checkout reference (pidx, tx_ref) or the provider's transaction id."""
        stmt = (
            sa_select(Ticket)
            .join(Payment, Payment.ticket_id == Ticket.id)
            .where(or_(Payment.provider_ref == reference, Payment.transaction_id == reference))
            .order_by(Payment.id.desc())
        )
        res = await db.execute(stmt)
        return res.scalars().first()

    async def find_paid_for_reservation(self, db: AsyncSession, reservation: Reservation) -> Optional[Ticket]:
        """A paid ticket covering this hold: linked by id, or any paid ticket on the same bus/date sharing a seat."""
        linked = [Ticket.reservation_id == reservation.id]
        if reservation.ticket_id is not None:
            linked.append(Ticket.id == reservation.ticket_id)
        stmt = sa_select(Ticket).where(or_(*linked), Ticket.payment_status == PaymentStatus.PAID.value)
        res = await db.execute(stmt)
        ticket = res.scalars().first()
        if ticket is not None:
            return ticket
        overlapping = await self.find_paid_for_seats(db, reservation.bus_id, reservation.travel_date, reservation.seat_labels)
        return overlapping[0] if overlapping else None

    async def find_paid_for_seats(self, db: AsyncSession, bus_id: int, travel_date: str, seat_labels: Iterable[str]) -> List[Ticket]:
        wanted = set(seat_labels)
        stmt = sa_select(Ticket).where(
            Ticket.bus_id == bus_id,
            Ticket.travel_date == travel_date,
            Ticket.payment_status == PaymentStatus.PAID.value,
        )
        res = await db.execute(stmt)
        return [t for t in res.scalars().all() if wanted.intersection(t.seat_labels or [])]

    async def list_paid(self, db: AsyncSession) -> List[Ticket]:
        stmt = sa_select(Ticket).where(Ticket.payment_status == PaymentStatus.PAID.value).order_by(Ticket.id)
        res = await db.execute(stmt)
        return list(res.scalars().all())

    async def search(self, db: AsyncSession, bus_id: int = None, travel_date: str = None, status: str = None,
                   skip: int = 0, limit: int = 50) -> List[Ticket]:
        stmt = sa_select(Ticket)
        if bus_id is not None:
            stmt = stmt.where(Ticket.bus_id == bus_id)
        if travel_date is not None:
            stmt = stmt.where(Ticket.travel_date == travel_date)
        if status is not None:
            stmt = stmt.where(Ticket.status == status)
        res = await db.execute(stmt.order_by(Ticket.id.desc()).offset(skip).limit(limit))
        return list(res.scalars().all())

    @staticmethod
    def mark_paid(ticket: Ticket):
        ticket.status = TicketStatus.CONFIRMED.value
        ticket.payment_status = PaymentStatus.PAID.value

    @staticmethod
    def mark_void(ticket: Ticket, payment_status: PaymentStatus):
        ticket.status = TicketStatus.CANCELED.value
        ticket.payment_status = PaymentStatus(payment_status).value
