from typing import Iterable, List


class ReservationError(Exception):
    """Base class for errors raised by the reservation core."""

    status_code = 400


class SeatConflict(ReservationError):
    status_code = 409

    def __init__(self, seats: Iterable[str], message: str = None):
        self.seats: List[str] = list(seats)
        super().__init__(message or "Seats unavailable: %s" % ", ".join(self.seats))


class ReservationNotFound(ReservationError):
    status_code = 404

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__("Reservation not found: %s" % reservation_id)


class ScheduleNotFound(ReservationError):
    status_code = 404


class UnknownSeats(ReservationError):
    def __init__(self, seats: Iterable[str]):
        self.seats = list(seats)
        super().__init__("Unknown seats for this schedule: %s" % ", ".join(self.seats))


class InvalidReservationRequest(ReservationError):
    pass


class LedgerWriteFailure(ReservationError):
    status_code = 500


class PaymentError(ReservationError):
    pass


class PaymentNotFound(PaymentError):
    status_code = 404


class PaymentLookupTimeout(PaymentError):
    status_code = 503
