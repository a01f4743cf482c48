from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from seathold.config import settings
import importlib
import logging
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from seathold.logging_setup import setup_logging, TRACE_ID_CTX
import uuid
import sentry_sdk
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from sqlalchemy import text

from seathold.services.errors import ReservationError, SeatConflict, UnknownSeats
from seathold.services.expiry_scheduler import ExpiryScheduler
from seathold.services.payment_reconciler import PaymentReconciler
from seathold.services.reconciliation import ReconciliationSweeper
from seathold.services.reservation_manager import ReservationManager

logger = logging.getLogger(__name__)

# List of module names to include as routers
MODULES = [
    "reservations",
    "buses",
    "payments",
    "admin",
]


def create_app(session_factory=None, sweep_enabled=None) -> FastAPI:
    if session_factory is None:
        from seathold.db.session import async_session as session_factory
    sweep_enabled = settings.SWEEP_ENABLED if sweep_enabled is None else sweep_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = ReservationManager(session_factory, scheduler=ExpiryScheduler())
        app.state.manager = manager
        app.state.reconciler = PaymentReconciler(manager)
        # timers are volatile; rebuild them from durable expiry timestamps
        await manager.rearm()
        sweeper = ReconciliationSweeper(manager)
        if sweep_enabled:
            await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await manager.scheduler.shutdown()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.session_factory = session_factory

    if settings.SENTRY_DSN:
        app.add_middleware(SentryAsgiMiddleware)

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        TRACE_ID_CTX.set(trace_id)
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(ReservationError)
    async def reservation_error_handler(request: Request, exc: ReservationError):
        content = {"detail": str(exc)}
        if isinstance(exc, SeatConflict):
            content["conflicting_seats"] = exc.seats
        elif isinstance(exc, UnknownSeats):
            content["unknown_seats"] = exc.seats
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=exc.status_code, content=content)

    for mod in MODULES:
        pkg = importlib.import_module(f"seathold.modules.{mod}.router")
        app.include_router(pkg.router, prefix=f"/{mod}", tags=[mod])

    @app.get("/")
    async def root():
        return {"app": settings.APP_NAME, "status": "ok"}

    @app.get("/metrics")
    async def metrics():
        content = generate_latest()
        return Response(content=content, media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        # readiness: database and redis (webhook replay protection)
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Readiness check: database unavailable")
            return Response(status_code=503, content="database unavailable")
        try:
            from seathold.redis_client import redis_client

            await redis_client.ping()
        except Exception:
            logger.exception("Readiness check: redis unavailable")
            return Response(status_code=503, content="redis unavailable")
        return {"status": "ready"}

    return app


# initialize logging and Sentry
setup_logging(settings.LOG_LEVEL)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)

app = create_app()
