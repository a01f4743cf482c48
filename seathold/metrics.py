from prometheus_client import Counter, Gauge, Histogram

# Reservation metrics
RESERVE_ATTEMPTS = Counter("seathold_reserve_attempts_total", "Seat reservation attempts", ["result"])
RESERVE_LATENCY = Histogram("seathold_reserve_latency_seconds", "Latency of the reserve check-and-hold")
RESERVATION_RESOLUTIONS = Counter(
    "seathold_reservation_resolutions_total", "Reservations leaving the active state", ["outcome"]
)
ARMED_TIMERS = Gauge("seathold_expiry_timers_armed", "In-process expiry timers currently armed")
SWEEP_RECOVERED = Counter("seathold_sweep_recovered_total", "Overdue reservations resolved by the sweep")
SWEEP_ERRORS = Counter("seathold_sweep_errors_total", "Errors while sweeping overdue reservations")

# Payment metrics
PAYMENT_SUCCESS = Counter("seathold_payments_success_total", "Successful payments processed", ["provider"])
PAYMENT_FAILURE = Counter("seathold_payments_failure_total", "Failed, canceled or refunded payments", ["provider"])
