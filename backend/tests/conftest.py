"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.api import ws as ws_module
from app.core.security import Identity, create_identity_token
from app.database import get_db
from app.main import app
from app.models import Base, User, UserRole
from app.services.onboarding import sync_user
from app.services.rate_limit import InMemoryCounterStore, RateLimiter

Headers = dict[str, str]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def rate_limiter() -> RateLimiter:
    """Give every test a fresh limiter so counters never leak between tests."""

    limiter = RateLimiter(InMemoryCounterStore(), max_requests=30, window_seconds=60)
    app.state.rate_limiter = limiter
    return limiter


@pytest.fixture()
def app_db(session_factory, monkeypatch) -> Iterator[None]:
    """Point the app's database dependency and websocket sessions at the test engine."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def test_db_session() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(ws_module, "get_db_session", test_db_session)
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client(app_db) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    with TestClient(app) as test_client:
        yield test_client


def token_for(user_id: str, **claims) -> str:
    return create_identity_token(
        user_id,
        email=claims.get("email", f"{user_id}@example.com"),
        name=claims.get("name", user_id.title()),
    )


def headers_for(user_id: str) -> Headers:
    return {"Authorization": f"Bearer {token_for(user_id)}"}


@pytest.fixture()
def provision(session_factory) -> Callable[..., Headers]:
    """Sync a user the way ``POST /users/sync`` does and return their auth headers.

    The first user provisioned in a test creates ``general`` and administers it.
    """

    def _provision(user_id: str, *, admin: bool = False) -> Headers:
        with session_factory() as session:
            sync_user(
                Identity(user_id=user_id, email=f"{user_id}@example.com", name=user_id.title()),
                session,
            )
            if admin:
                session.get(User, user_id).role = UserRole.ADMIN
                session.commit()
        return headers_for(user_id)

    return _provision
