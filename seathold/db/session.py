from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker
from seathold.config import settings


def make_engine(url=None, **overrides):
    """Async engine for ``url`` (defaults to DATABASE_URL); pool sizing only applies to server databases."""
    url = str(url or settings.DATABASE_URL)
    options = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.startswith("sqlite") and "poolclass" not in overrides:
        options.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    options.update(overrides)
    return create_async_engine(url, **options)


def make_session_factory(bind):
    # the reservation core opens and commits its own transactions
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine()
async_session = make_session_factory(engine)
