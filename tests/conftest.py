from contextlib import contextmanager
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from titikrasa.auth import create_access_token, hash_password
from titikrasa.common import _now
from titikrasa.db import init_db
from titikrasa.main import app, get_db
from titikrasa.models import Profile, Role, UserRole

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


@dataclass
class Harness:
    client: TestClient
    session_factory: sessionmaker
    users: dict = field(default_factory=dict)

    def headers(self, role: str = "admin") -> dict:
        token, _ = create_access_token(self.users[role])
        return {"Authorization": f"Bearer {token}"}

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()


def add_user(db: Session, email: str, name: str, role: str, is_active: bool = True) -> str:
    profile = Profile(
        name=name,
        email=email,
        password_hash=PASSWORD_HASH,
        is_active=is_active,
        created_at=_now(),
    )
    db.add(profile)
    db.flush()
    role_id = db.scalar(select(Role.id).where(Role.name == role))
    db.add(UserRole(user_id=profile.user_id, role_id=role_id))
    db.commit()
    return profile.user_id


def _make_client() -> Harness:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    init_db(engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    harness = Harness(client=TestClient(app), session_factory=TestingSessionLocal)
    with harness.session() as db:
        for role in ("admin", "manager", "staff"):
            harness.users[role] = add_user(db, f"{role}@titikrasa.id", role.title(), role)
    return harness


@pytest.fixture
def harness():
    harness = _make_client()
    with harness.client:
        yield harness
    app.dependency_overrides.clear()
