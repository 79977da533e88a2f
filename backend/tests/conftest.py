# tests/conftest.py

import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient

from cojam.auth.jwt_tokens import create_access_token, default_jwt_config
from cojam.core.db import Base, get_db
from cojam.core.locks import KeyedLocks
from cojam.main import app
from cojam.models import User
from cojam.services.membership import MembershipService
from cojam.services.realtime import EventGateway


class RecordingGateway(EventGateway):
    """Gateway that remembers every notification handed to it."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def send_to_user(self, user_id, event, data):
        self.sent.append(("user", user_id, event, data))
        return super().send_to_user(user_id, event, data)

    def broadcast(self, session_id, event, data):
        self.sent.append(("session", session_id, event, data))
        return super().broadcast(session_id, event, data)

    def events(self, target=None):
        return [e for (kind, to, e, _) in self.sent if target is None or (kind, to) == target]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def service(db, gateway, locks):
    return MembershipService(db, gateway, locks=locks)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(name=None):
        n = next(counter)
        user = User(name=name or f"user{n}", email=f"user{n}@example.com")
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def auth_headers():
    cfg = default_jwt_config()

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(cfg, user.id)}"}

    return _headers


@pytest.fixture
def client(session_factory, gateway, locks, monkeypatch):
    """TestClient bound to the in-memory database and the recording gateway."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(app.state, "gateway", gateway)
    monkeypatch.setattr(app.state, "locks", locks)

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
