from datetime import date, datetime
from typing import Optional, Union

from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seathold.models.models import Schedule
from seathold.services.errors import InvalidReservationRequest, ScheduleNotFound


def normalize_date(value: Union[str, date, datetime, None]) -> Optional[str]:
    """Return a YYYY-MM-DD string; seat buckets are keyed by calendar date, never by timestamp."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise InvalidReservationRequest("Invalid travel date: %r" % value)


async def find_schedule(db: AsyncSession, bus_id: int, travel_date: Optional[str] = None) -> Schedule:
    """Schedule serving ``bus_id`` on ``travel_date``; with no date, the bus's first schedule."""
    stmt = sa_select(Schedule).where(Schedule.bus_id == bus_id).order_by(Schedule.id)
    res = await db.execute(stmt)
    schedules = res.scalars().all()
    if travel_date is None and schedules:
        return schedules[0]
    for schedule in schedules:
        if travel_date in (schedule.travel_dates or []):
            return schedule
    raise ScheduleNotFound("No schedule for bus %s on %s" % (bus_id, travel_date or "any date"))


async def get_schedule(db: AsyncSession, schedule_id: int) -> Schedule:
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise ScheduleNotFound("Schedule not found: %s" % schedule_id)
    return schedule
