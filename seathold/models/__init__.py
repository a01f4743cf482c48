from .models import *

__all__ = [
    "Base",
    "SeatStatus",
    "ReservationState",
    "TicketStatus",
    "PaymentStatus",
    "Bus",
    "Schedule",
    "ScheduleSeat",
    "Reservation",
    "Ticket",
    "Payment",
]
