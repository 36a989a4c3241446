from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

settings = get_settings()


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create the engine for ``url``.

    SQLite (used for local runs and tests) takes no pool sizing and must be
    shareable between the threads FastAPI runs sync endpoints on.
    """

    options: dict[str, Any] = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return create_engine(url, **options)


engine = build_engine(settings.database_url, echo=settings.debug)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Short-lived session for code outside the request cycle.

    The change websocket opens one per authorization check rather than
    keeping a connection checked out while the socket stays open.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
