"""Sync SQLAlchemy engine and request-scoped sessions.

The approval service works on a sync ``Session`` so the same code can run
from API handlers and from Celery workers. The engine is built lazily so that
importing the app does not require a reachable database or driver.
"""
from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings


@lru_cache
def get_engine() -> Engine:
    return create_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


@lru_cache
def get_sessionmaker() -> sessionmaker[Session]:
    return sessionmaker(
        bind=get_engine(),
        expire_on_commit=False,
        autoflush=False,
    )


def get_session() -> Generator[Session, None, None]:
    with get_sessionmaker()() as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
