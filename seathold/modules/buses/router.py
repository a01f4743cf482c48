import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends

from seathold.deps import get_manager
from seathold.schemas.reservation import SeatStateResponse
from seathold.services.reservation_manager import ReservationManager

router = APIRouter()


@router.get("/{bus_id}/seats", response_model=SeatStateResponse)
async def seat_state(bus_id: int, date: Optional[dt.date] = None, manager: ReservationManager = Depends(get_manager)):
    state = await manager.seat_state(bus_id, date)
    return SeatStateResponse(bus_id=bus_id, **state.as_dict())
