import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from seathold.db.base import Base


class SeatStatus(str, enum.Enum):
    AVAILABLE = "available"
    HELD = "held"
    BOOKED = "booked"
    DAMAGED = "damaged"
    MAINTENANCE = "maintenance"


class ReservationState(str, enum.Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    EXPIRED = "expired"


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELED = "canceled"


class Bus(Base):
    __tablename__ = "buses"
    id = Column(Integer, primary_key=True)
    registration_number = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    capacity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    schedules = relationship("Schedule", back_populates="bus")


class Schedule(Base):
    __tablename__ = "schedules"
    id = Column(Integer, primary_key=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False, index=True)
    # journey dates served by this schedule, as YYYY-MM-DD strings
    travel_dates = Column(JSON, nullable=False, default=list)
    # bus-global default inventory, copied into schedule_seats on the first write for a date
    default_available = Column(JSON, nullable=False, default=list)
    default_booked = Column(JSON, nullable=False, default=list)
    fare = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    bus = relationship("Bus", back_populates="schedules")

    @property
    def seat_labels(self):
        labels = list(self.default_available or [])
        labels.extend(s for s in (self.default_booked or []) if s not in labels)
        return labels


class ScheduleSeat(Base):
    """Date-scoped status of one seat; the only authoritative record of seat state."""

    __tablename__ = "schedule_seats"
    id = Column(Integer, primary_key=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False)
    travel_date = Column(String(10), nullable=False)
    seat_label = Column(String(16), nullable=False)
    status = Column(String(20), nullable=False, default=SeatStatus.AVAILABLE.value)
    is_permanent = Column(Boolean, nullable=False, default=False)
    reservation_id = Column(String(36), nullable=True, index=True)
    ticket_id = Column(Integer, nullable=True, index=True)
    booking_id = Column(String(64), nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("schedule_id", "travel_date", "seat_label", name="uq_schedule_date_seat"),
        Index("ix_schedule_seats_schedule_date", "schedule_id", "travel_date"),
    )


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(String(36), primary_key=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False)
    travel_date = Column(String(10), nullable=False)
    seat_labels = Column(JSON, nullable=False, default=list)
    state = Column(String(20), nullable=False, default=ReservationState.ACTIVE.value)
    ticket_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_reservations_state_expires", "state", "expires_at"),)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True)
    booking_id = Column(String(64), nullable=False, unique=True, index=True)
    reservation_id = Column(String(36), nullable=True, index=True)
    bus_id = Column(Integer, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="SET NULL"), nullable=True)
    travel_date = Column(String(10), nullable=False)
    seat_labels = Column(JSON, nullable=False, default=list)
    passenger_name = Column(String(255), nullable=True)
    passenger_email = Column(String(255), nullable=True)
    passenger_phone = Column(String(32), nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=TicketStatus.PENDING.value, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (Index("ix_tickets_bus_date_payment", "bus_id", "travel_date", "payment_status"),)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="NPR")
    provider = Column(String(128), nullable=False)
    provider_ref = Column(String(255), nullable=False, unique=True)
    status = Column(String(50), nullable=False, default="initiated", index=True)
    transaction_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    paid_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
