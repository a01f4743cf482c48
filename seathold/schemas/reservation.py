from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import date, datetime


class ReserveRequest(BaseModel):
    bus_id: int
    date: date
    seat_labels: List[str] = Field(..., min_length=1)


class ReservationResponse(BaseModel):
    reservation_id: str
    expires_at: datetime
    seat_labels: List[str]


class ReservationStatusResponse(BaseModel):
    reservation_id: str
    state: str
    expired: bool
    remaining_seconds: int
    is_paid: bool
    expires_at: datetime


class ReleaseResponse(BaseModel):
    released: bool


class ConfirmRequest(BaseModel):
    reservation_id: Optional[str] = None
    ticket_id: Optional[int] = None
    seat_labels: Optional[List[str]] = None
    bus_id: Optional[int] = None

    @model_validator(mode="after")
    def require_reference(self):
        if not self.reservation_id and self.ticket_id is None:
            raise ValueError("reservation_id or ticket_id is required")
        return self


class ConfirmResponse(BaseModel):
    confirmed: bool
    booking_id: Optional[str] = None
    seat_labels: List[str]
    already_confirmed: bool = False


class SeatStateResponse(BaseModel):
    bus_id: int
    date: Optional[str] = None
    available: List[str]
    held: List[str]
    booked: List[str]
    out_of_service: List[str]
    permanently_booked: List[str]


class PermanentSeatsEntry(BaseModel):
    date: str
    seats: List[str]
