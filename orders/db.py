"""SQLAlchemy engine helpers.

The connection URL comes from ``OrdersSettings.database_url``; SQLite and
PostgreSQL (``postgresql+psycopg://...``) are both supported.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase

from .config import OrdersSettings, get_settings


class Base(DeclarativeBase):
    pass


def make_engine(settings: OrdersSettings | None = None, url: str | None = None) -> Engine:
    """Create an engine for ``url`` (defaults to the configured database)."""
    settings = settings or get_settings()
    url = url or settings.database_url
    kwargs = {}
    if url.startswith("sqlite"):
        # ledger and store are shared between worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, pool_pre_ping=True, echo=settings.echo_sql, **kwargs)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401  registers the mappings on Base

    Base.metadata.create_all(engine)

