"""Shared fixtures: a throwaway SQLite store and a few acting principals."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401  registers tables on Base.metadata
from app.core.config import settings
from app.db.base import Base
from app.models.approval import Role
from app.schemas.approval import Principal

TENANT_ID = uuid.UUID("7d0f2a4e-31c6-4b8e-9a51-2f64c3d8e901")
OTHER_TENANT_ID = uuid.UUID("b2c94e17-8a3d-4f60-a1e5-5c7d9b0f3a24")


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'approvals.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


def make_principal(role: Role | str, tenant_id: uuid.UUID | None = TENANT_ID) -> Principal:
    return Principal(id=uuid.uuid4(), role=role, tenant_id=tenant_id)


def make_token(
    subject: str,
    role: str,
    tenant_id: str | None = None,
    expires_in: timedelta = timedelta(minutes=60),
) -> str:
    """Sign a bearer token the way the identity service lays out its claims."""
    claims = {
        "sub": subject,
        "role": role,
        "type": "access",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if tenant_id:
        claims["tenant"] = tenant_id
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def requester():
    return make_principal(Role.employee)


@pytest.fixture
def supervisor():
    return make_principal(Role.supervisor)


@pytest.fixture
def manager():
    return make_principal(Role.manager)


@pytest.fixture
def admin():
    return make_principal(Role.admin)
