import logging
import sys
from pythonjsonlogger import jsonlogger
from contextvars import ContextVar

# trace id contextvar, set per request by the X-Trace-Id middleware
TRACE_ID_CTX: ContextVar[str] = ContextVar("trace_id", default=None)

# fields the reservation and payment paths pass through ``extra``
CONTEXT_FIELDS = ("reservation_id", "ticket_id", "provider_ref")

# chatty at INFO; kept at WARNING unless the service itself logs below that
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Stamps service name and trace id, and gives every record the same reservation keys."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record):
        record.service = self.service
        record.trace_id = TRACE_ID_CTX.get(None)
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


def setup_logging(level=logging.INFO, service: str = "seathold"):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    fmt = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(service)s %(trace_id)s "
        "%(reservation_id)s %(ticket_id)s %(provider_ref)s",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
    )
    handler.setFormatter(fmt)
    handler.addFilter(ContextFilter(service))
    root.setLevel(level)
    root.handlers = []
    root.addHandler(handler)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
