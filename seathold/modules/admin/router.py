from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from seathold.deps import get_manager
from seathold.schemas.reservation import PermanentSeatsEntry
from seathold.services.reservation_manager import ReservationManager
from seathold.services.schedules import normalize_date

router = APIRouter()


@router.post("/reservations/sweep")
async def sweep_reservations(grace_seconds: Optional[int] = None, manager: ReservationManager = Depends(get_manager)):
    """Run the reconciliation sweep now instead of waiting for the next interval."""
    recovered = await manager.sweep_expired(grace_seconds)
    purged = await manager.purge_resolved()
    return {"recovered": recovered, "purged": purged}


@router.post("/seats/repair")
async def repair_permanent_seats(manager: ReservationManager = Depends(get_manager)):
    return await manager.repair_permanent_bookings()


# Bookings view
@router.get("/bookings")
async def view_bookings(
    bus_id: Optional[int] = None,
    date: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    manager: ReservationManager = Depends(get_manager),
):
    async with manager.session_factory() as db:
        tickets = await manager.tickets.search(db, bus_id=bus_id, travel_date=normalize_date(date), status=status, skip=skip, limit=limit)
    out = [
        {
            "id": t.id,
            "booking_id": t.booking_id,
            "reservation_id": t.reservation_id,
            "bus_id": t.bus_id,
            "date": t.travel_date,
            "seat_labels": t.seat_labels,
            "passenger_name": t.passenger_name,
            "price": float(t.price) if t.price is not None else None,
            "status": t.status,
            "payment_status": t.payment_status,
            "created_at": t.created_at,
        }
        for t in tickets
    ]
    return out


@router.get("/schedules/{schedule_id}/permanent-seats", response_model=List[PermanentSeatsEntry])
async def permanent_seats(schedule_id: int, manager: ReservationManager = Depends(get_manager)):
    return await manager.permanent_bookings(schedule_id)
