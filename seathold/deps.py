from fastapi import Request

from seathold.services.payment_reconciler import PaymentReconciler
from seathold.services.reservation_manager import ReservationManager


def get_manager(request: Request) -> ReservationManager:
    return request.app.state.manager


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler
