"""Seat Ledger: date-scoped seat status for a schedule.

Every transition is a conditional ``UPDATE ... WHERE status = <source>`` whose
row count must match the batch, so two writers can never both move the same
seat out of the same bucket. Callers run these methods inside their own
transaction; a lost race raises ``SeatConflict`` and the transaction rolls back
as a whole.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy import insert as sa_insert
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from seathold.models.models import Schedule, ScheduleSeat, SeatStatus
from seathold.services.errors import LedgerWriteFailure, SeatConflict, UnknownSeats

logger = logging.getLogger(__name__)

OUT_OF_SERVICE = (SeatStatus.DAMAGED.value, SeatStatus.MAINTENANCE.value)
_SEAT_KEY = ["schedule_id", "travel_date", "seat_label"]


@dataclass
class SeatState:
    travel_date: Optional[str]
    available: List[str] = field(default_factory=list)
    held: List[str] = field(default_factory=list)
    booked: List[str] = field(default_factory=list)
    out_of_service: List[str] = field(default_factory=list)
    permanently_booked: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {
            "date": self.travel_date,
            "available": self.available,
            "held": self.held,
            "booked": self.booked,
            "out_of_service": self.out_of_service,
            "permanently_booked": self.permanently_booked,
        }


@dataclass
class MarkResult:
    """Outcome of a ledger transition; falsy when any seat was outside the source bucket."""

    ok: bool
    changed: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)

    def __bool__(self):
        return self.ok


def _insert_ignore(db: AsyncSession, rows: List[Dict]):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(ScheduleSeat).values(rows).on_conflict_do_nothing(index_elements=_SEAT_KEY)
    if dialect == "sqlite":
        return sqlite.insert(ScheduleSeat).values(rows).on_conflict_do_nothing(index_elements=_SEAT_KEY)
    return sa_insert(ScheduleSeat).values(rows)


class SeatLedger:
    async def get_seat_state(self, db: AsyncSession, schedule: Schedule, travel_date: Optional[str] = None) -> SeatState:
        """Seat buckets for ``travel_date``, or the schedule's default inventory when the date has no entries yet."""
        rows = []
        if travel_date is not None:
            rows = await self._rows(db, schedule.id, travel_date)
        if not rows:
            return self._default_state(schedule, travel_date)

        order = {label: i for i, label in enumerate(schedule.seat_labels)}
        rows = sorted(rows, key=lambda r: order.get(r.seat_label, len(order)))
        state = SeatState(travel_date)
        for row in rows:
            if row.status == SeatStatus.AVAILABLE.value:
                state.available.append(row.seat_label)
            elif row.status == SeatStatus.HELD.value:
                state.held.append(row.seat_label)
            elif row.status in OUT_OF_SERVICE:
                state.out_of_service.append(row.seat_label)
            else:
                state.booked.append(row.seat_label)
            if row.is_permanent:
                state.permanently_booked.append(row.seat_label)
        return state

    async def is_permanently_booked(self, db: AsyncSession, schedule_id: int, travel_date: str, labels: Iterable[str]) -> List[str]:
        labels = list(labels)
        if not labels:
            return []
        stmt = sa_select(ScheduleSeat.seat_label).where(
            ScheduleSeat.schedule_id == schedule_id,
            ScheduleSeat.travel_date == travel_date,
            ScheduleSeat.seat_label.in_(labels),
            ScheduleSeat.is_permanent.is_(True),
        )
        res = await db.execute(stmt)
        found = set(res.scalars().all())
        return [label for label in labels if label in found]

    async def permanent_bookings(self, db: AsyncSession, schedule_id: int) -> List[Dict]:
        """Permanently booked seats of a schedule as ``[{"date": ..., "seats": [...]}]``."""
        stmt = (
            sa_select(ScheduleSeat.travel_date, ScheduleSeat.seat_label)
            .where(ScheduleSeat.schedule_id == schedule_id, ScheduleSeat.is_permanent.is_(True))
            .order_by(ScheduleSeat.travel_date, ScheduleSeat.id)
        )
        res = await db.execute(stmt)
        grouped: Dict[str, List[str]] = {}
        for travel_date, label in res.all():
            grouped.setdefault(travel_date, []).append(label)
        return [{"date": d, "seats": seats} for d, seats in grouped.items()]

    async def mark_seats(
        self,
        db: AsyncSession,
        schedule: Schedule,
        travel_date: str,
        labels: Iterable[str],
        to_status: SeatStatus,
        *,
        reservation_id: Optional[str] = None,
        ticket_id: Optional[int] = None,
        booking_id: Optional[str] = None,
        permanent: bool = False,
    ) -> MarkResult:
        """Move ``labels`` to ``to_status`` (held, booked or available).

        held:      from available (never from a permanent seat); all-or-nothing.
        booked:    from available, or held by ``reservation_id``; seats already
                   permanently booked by the same ticket (or, without a
                   ticket, the same reservation) count as done.
        available: from held by ``reservation_id``, or from anything owned by
                   ``ticket_id`` (refund/cancel, which also drops permanence).
                   Permanently booked seats are never released on the
                   reservation path; they are reported in ``excluded``.
        """
        labels = list(dict.fromkeys(labels))
        if not labels:
            return MarkResult(True)
        inventory = set(schedule.seat_labels)
        unknown = [label for label in labels if label not in inventory]
        if unknown:
            raise UnknownSeats(unknown)

        try:
            await self._materialize(db, schedule, travel_date)
            rows = {r.seat_label: r for r in await self._rows(db, schedule.id, travel_date, labels, for_update=True)}
            to_status = SeatStatus(to_status)
            if to_status == SeatStatus.HELD:
                return await self._hold(db, schedule.id, travel_date, labels, rows, reservation_id)
            if to_status == SeatStatus.BOOKED:
                return await self._book(db, schedule.id, travel_date, labels, rows, reservation_id, ticket_id, booking_id, permanent)
            if to_status == SeatStatus.AVAILABLE:
                return await self._release(db, schedule.id, travel_date, labels, rows, reservation_id, ticket_id)
        except SQLAlchemyError as exc:
            logger.exception("Seat ledger write failed for schedule %s on %s", schedule.id, travel_date)
            raise LedgerWriteFailure(str(exc)) from exc
        raise ValueError("Unsupported seat transition: %s" % to_status)

    async def _hold(self, db, schedule_id, travel_date, labels, rows, reservation_id) -> MarkResult:
        free = [label for label in labels if rows[label].status == SeatStatus.AVAILABLE.value and not rows[label].is_permanent]
        if len(free) != len(labels):
            return MarkResult(False, excluded=[label for label in labels if label not in free])
        cond = and_(ScheduleSeat.status == SeatStatus.AVAILABLE.value, ScheduleSeat.is_permanent.is_(False))
        await self._apply(db, schedule_id, travel_date, labels, cond, status=SeatStatus.HELD.value, reservation_id=reservation_id)
        return MarkResult(True, changed=labels)

    async def _book(self, db, schedule_id, travel_date, labels, rows, reservation_id, ticket_id, booking_id, permanent) -> MarkResult:
        def owned(row):
            if row.status != SeatStatus.BOOKED.value or not row.is_permanent:
                return False
            if ticket_id is not None:
                return row.ticket_id == ticket_id
            return reservation_id is not None and row.reservation_id == reservation_id

        done = [label for label in labels if owned(rows[label])]
        pending = [label for label in labels if label not in done]

        def movable(row):
            if row.status == SeatStatus.AVAILABLE.value and not row.is_permanent:
                return True
            return row.status == SeatStatus.HELD.value and reservation_id is not None and row.reservation_id == reservation_id

        blocked = [label for label in pending if not movable(rows[label])]
        if blocked:
            return MarkResult(False, excluded=blocked)
        if not pending:
            return MarkResult(True)

        cond = and_(ScheduleSeat.status == SeatStatus.AVAILABLE.value, ScheduleSeat.is_permanent.is_(False))
        if reservation_id is not None:
            cond = or_(cond, and_(ScheduleSeat.status == SeatStatus.HELD.value, ScheduleSeat.reservation_id == reservation_id))
        await self._apply(
            db, schedule_id, travel_date, pending, cond,
            status=SeatStatus.BOOKED.value,
            is_permanent=permanent,
            reservation_id=reservation_id,
            ticket_id=ticket_id,
            booking_id=booking_id,
        )
        return MarkResult(True, changed=pending)

    async def _release(self, db, schedule_id, travel_date, labels, rows, reservation_id, ticket_id) -> MarkResult:
        if ticket_id is not None:
            owned = [label for label in labels if rows[label].ticket_id == ticket_id or (
                reservation_id is not None and rows[label].reservation_id == reservation_id
                and rows[label].status == SeatStatus.HELD.value
            )]
            cond = ScheduleSeat.ticket_id == ticket_id
            if reservation_id is not None:
                cond = or_(cond, and_(ScheduleSeat.status == SeatStatus.HELD.value, ScheduleSeat.reservation_id == reservation_id))
            excluded = []
        else:
            excluded = [label for label in labels if rows[label].is_permanent]
            if excluded:
                logger.warning(
                    "InconsistentPermanentBooking: excluding permanently booked seats from release",
                    extra={"schedule_id": schedule_id, "travel_date": travel_date, "seats": excluded, "reservation_id": reservation_id},
                )
            owned = [
                label for label in labels
                if label not in excluded and rows[label].status == SeatStatus.HELD.value
                and reservation_id is not None and rows[label].reservation_id == reservation_id
            ]
            cond = and_(
                ScheduleSeat.status == SeatStatus.HELD.value,
                ScheduleSeat.reservation_id == reservation_id,
                ScheduleSeat.is_permanent.is_(False),
            )

        if owned:
            await self._apply(
                db, schedule_id, travel_date, owned, cond,
                status=SeatStatus.AVAILABLE.value,
                is_permanent=False,
                reservation_id=None,
                ticket_id=None,
                booking_id=None,
            )
        skipped = [label for label in labels if label not in owned and label not in excluded]
        return MarkResult(not skipped and not excluded, changed=owned, excluded=excluded + skipped)

    async def _apply(self, db, schedule_id, travel_date, labels, cond, **values):
        stmt = (
            sa_update(ScheduleSeat)
            .where(
                ScheduleSeat.schedule_id == schedule_id,
                ScheduleSeat.travel_date == travel_date,
                ScheduleSeat.seat_label.in_(labels),
                cond,
            )
            .values(**values)
            .returning(ScheduleSeat.seat_label)
            .execution_options(synchronize_session=False)
        )
        moved = set((await db.execute(stmt)).scalars().all())
        lost = [label for label in labels if label not in moved]
        if lost:
            # another writer moved these seats after we read them
            raise SeatConflict(lost)

    async def _materialize(self, db: AsyncSession, schedule: Schedule, travel_date: str):
        res = await db.execute(
            sa_select(ScheduleSeat.seat_label).where(
                ScheduleSeat.schedule_id == schedule.id, ScheduleSeat.travel_date == travel_date
            )
        )
        existing = set(res.scalars().all())
        booked = set(schedule.default_booked or [])
        missing = [
            {
                "schedule_id": schedule.id,
                "travel_date": travel_date,
                "seat_label": label,
                "status": SeatStatus.BOOKED.value if label in booked else SeatStatus.AVAILABLE.value,
                "is_permanent": False,
            }
            for label in schedule.seat_labels
            if label not in existing
        ]
        if missing:
            await db.execute(_insert_ignore(db, missing))

    async def _rows(self, db: AsyncSession, schedule_id: int, travel_date: str, labels: Optional[List[str]] = None, for_update: bool = False):
        stmt = sa_select(
            ScheduleSeat.seat_label,
            ScheduleSeat.status,
            ScheduleSeat.is_permanent,
            ScheduleSeat.reservation_id,
            ScheduleSeat.ticket_id,
        ).where(ScheduleSeat.schedule_id == schedule_id, ScheduleSeat.travel_date == travel_date)
        if labels is not None:
            stmt = stmt.where(ScheduleSeat.seat_label.in_(labels))
        if for_update:
            stmt = stmt.with_for_update()
        res = await db.execute(stmt.order_by(ScheduleSeat.id))
        return res.all()

    @staticmethod
    def _default_state(schedule: Schedule, travel_date: Optional[str]) -> SeatState:
        booked = list(schedule.default_booked or [])
        available = [label for label in (schedule.default_available or []) if label not in booked]
        return SeatState(travel_date, available=available, booked=booked)
