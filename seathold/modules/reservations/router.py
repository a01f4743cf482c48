from fastapi import APIRouter, Depends, status

from seathold.deps import get_manager
from seathold.schemas.reservation import (
    ConfirmRequest,
    ConfirmResponse,
    ReleaseResponse,
    ReservationResponse,
    ReservationStatusResponse,
    ReserveRequest,
)
from seathold.services.reservation_manager import ReservationManager

router = APIRouter()


@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def reserve_seats(req: ReserveRequest, manager: ReservationManager = Depends(get_manager)):
    """Hold seats for the reservation TTL. 409 lists the seats that are already held or booked."""
    reservation = await manager.reserve(req.bus_id, req.date, req.seat_labels)
    return ReservationResponse(
        reservation_id=reservation.id,
        expires_at=reservation.expires_at,
        seat_labels=reservation.seat_labels,
    )


# declared before /{reservation_id} so "confirm" is never read as an id
@router.post("/confirm", response_model=ConfirmResponse)
async def confirm_reservation(req: ConfirmRequest, manager: ReservationManager = Depends(get_manager)):
    outcome = await manager.confirm(
        reservation_id=req.reservation_id,
        ticket_id=req.ticket_id,
        seat_labels=req.seat_labels,
        bus_id=req.bus_id,
    )
    return ConfirmResponse(
        confirmed=outcome.confirmed,
        booking_id=outcome.booking_id,
        seat_labels=outcome.seat_labels,
        already_confirmed=outcome.already_confirmed,
    )


@router.get("/{reservation_id}", response_model=ReservationStatusResponse)
async def reservation_status(reservation_id: str, manager: ReservationManager = Depends(get_manager)):
    st = await manager.status(reservation_id)
    return ReservationStatusResponse(
        reservation_id=st.reservation_id,
        state=st.state,
        expired=st.expired,
        remaining_seconds=st.remaining_seconds,
        is_paid=st.is_paid,
        expires_at=st.expires_at,
    )


@router.delete("/{reservation_id}", response_model=ReleaseResponse)
async def release_reservation(reservation_id: str, manager: ReservationManager = Depends(get_manager)):
    """Release a hold. Unknown or already resolved reservations answer ``released: false``."""
    outcome = await manager.release(reservation_id)
    return ReleaseResponse(released=outcome.released)
