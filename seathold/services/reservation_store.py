import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seathold.models.models import Reservation, ReservationState, Schedule, SeatStatus
from seathold.services.errors import SeatConflict
from seathold.services.seat_ledger import SeatLedger

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    # naive UTC; DateTime columns are stored without a zone on every backend
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReservationStore:
    async def create(
        self,
        db: AsyncSession,
        ledger: SeatLedger,
        schedule: Schedule,
        travel_date: str,
        seat_labels: List[str],
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """Place the hold in the ledger and record it, in the caller's transaction."""
        now = now or utcnow()
        reservation = Reservation(
            id=str(uuid4()),
            bus_id=schedule.bus_id,
            schedule_id=schedule.id,
            travel_date=travel_date,
            seat_labels=list(seat_labels),
            state=ReservationState.ACTIVE.value,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        marked = await ledger.mark_seats(
            db, schedule, travel_date, seat_labels, SeatStatus.HELD, reservation_id=reservation.id
        )
        if not marked:
            raise SeatConflict(marked.excluded)
        db.add(reservation)
        await db.flush()
        return reservation

    async def get(self, db: AsyncSession, reservation_id: str, for_update: bool = False) -> Optional[Reservation]:
        stmt = sa_select(Reservation).where(Reservation.id == reservation_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await db.execute(stmt)
        return res.scalars().first()

    async def finish(self, db: AsyncSession, reservation: Reservation, state: ReservationState, ticket_id: Optional[int] = None):
        """Leave ACTIVE; the row stays behind as a tombstone until ``purge_resolved``."""
        reservation.state = ReservationState(state).value
        reservation.resolved_at = utcnow()
        if ticket_id is not None:
            reservation.ticket_id = ticket_id
        await db.flush()

    async def mark_confirmed(self, db: AsyncSession, reservation: Reservation, ticket_id: Optional[int]):
        await self.finish(db, reservation, ReservationState.CONFIRMED, ticket_id=ticket_id)

    async def delete(self, db: AsyncSession, reservation_id: str) -> bool:
        res = await db.execute(sa_delete(Reservation).where(Reservation.id == reservation_id))
        return bool(res.rowcount)

    async def list_active(self, db: AsyncSession) -> List[Reservation]:
        stmt = sa_select(Reservation).where(Reservation.state == ReservationState.ACTIVE.value)
        res = await db.execute(stmt.order_by(Reservation.expires_at))
        return list(res.scalars().all())

    async def list_overdue(self, db: AsyncSession, cutoff: datetime, limit: int = 500) -> List[str]:
        stmt = (
            sa_select(Reservation.id)
            .where(Reservation.state == ReservationState.ACTIVE.value, Reservation.expires_at <= cutoff)
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        res = await db.execute(stmt)
        return list(res.scalars().all())

    async def purge_resolved(self, db: AsyncSession, older_than: datetime) -> int:
        stmt = sa_delete(Reservation).where(
            Reservation.state != ReservationState.ACTIVE.value,
            Reservation.resolved_at < older_than,
        )
        res = await db.execute(stmt)
        return res.rowcount or 0
