"""Engine and session factory.

Cycle advances and event claims take row locks and use conditional
updates; on PostgreSQL they run under READ COMMITTED.
"""
from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from usage_billing.config import settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


def engine_options(database_url: str) -> dict:
    backend = make_url(database_url).get_backend_name()
    options: dict = {"pool_pre_ping": True}
    if backend == "sqlite":
        # Local development only; SQLite has no pool sizing or row locks
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )
    if backend == "postgresql":
        options["isolation_level"] = "READ COMMITTED"
        options["connect_args"] = {"application_name": "usage_billing"}
    return options


def get_engine():
    return create_engine(settings.database_url, **engine_options(settings.database_url))


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
