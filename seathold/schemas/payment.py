from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class PassengerInfo(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class PaymentInitiateRequest(BaseModel):
    reservation_id: str
    provider: str = Field(..., description="one of: khalti, flutterwave")
    passenger: PassengerInfo
    amount: Optional[float] = Field(None, description="defaults to fare x seats")
    currency: Optional[str] = None


class PaymentInitiateResponse(BaseModel):
    reservation_id: str
    ticket_id: int
    booking_id: str
    provider: str
    provider_ref: str
    checkout_url: Optional[str] = None
    amount: float
    currency: str


class PaymentVerifyRequest(BaseModel):
    provider_ref: str


class PaymentResult(BaseModel):
    provider_ref: str
    outcome: str
    ticket_id: int
    booking_id: Optional[str] = None
    reservation_id: Optional[str] = None
    payment_status: Optional[str] = None
    already_processed: bool = False


class WebhookAck(BaseModel):
    received: bool
    duplicate: bool = False


class TicketLookupRequest(BaseModel):
    reference: str = Field(..., description="provider checkout reference or transaction id")


class TicketResponse(BaseModel):
    id: int
    booking_id: str
    reservation_id: Optional[str] = None
    bus_id: int
    travel_date: str
    seat_labels: List[str]
    passenger_name: Optional[str] = None
    passenger_email: Optional[str] = None
    passenger_phone: Optional[str] = None
    price: float
    status: str
    payment_status: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
