import os
import tempfile
from datetime import timedelta

import fakeredis
import pytest

# The engine is built at import time, so point it at a scratch database first
_DB_DIR = tempfile.mkdtemp(prefix="slot-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'slots.db')}"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from fastapi.testclient import TestClient  # noqa: E402

from slot_service.app import create_app  # noqa: E402
from slot_service.app.auth import hash_password, issue_token  # noqa: E402
from slot_service.app.dependencies import SessionLocal, engine, get_redis_client  # noqa: E402
from slot_service.app.models import Base, User  # noqa: E402
from slot_service.app.utils import utc_today  # noqa: E402


@pytest.fixture(autouse=True)
def database(monkeypatch):
    monkeypatch.delenv("ENABLE_TRANSACTIONS", raising=False)
    monkeypatch.delenv("MAX_SLOTS_PER_DAY", raising=False)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def client(redis_client):
    app = create_app()
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(role="doctor", verified=True, is_chain=False, parent=None, name=None):
        counter["n"] += 1
        user = User(
            name=name or f"Test {role.capitalize()} {counter['n']}",
            email=f"{role}{counter['n']}@example.com",
            hashed_password=hash_password("testpassword123"),
            role=role,
            is_verified=verified,
            is_chain=is_chain,
            parent_hospital_id=parent.id if parent is not None else None,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        return {"Authorization": f"Bearer {issue_token(user)}"}

    return _auth_headers


@pytest.fixture
def future_day():
    def _future_day(days=1):
        return (utc_today() + timedelta(days=days)).isoformat()

    return _future_day
