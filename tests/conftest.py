"""
Pytest fixtures for the ProcureFlow test suite.

Provides:
- A fresh in-memory SQLite database per test
- A FastAPI TestClient wired to that database
- A registered user with auth headers, and an item factory
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["LLM_ENABLED"] = "0"
os.environ["LOG_JSON"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from procureflow.auth import create_token, hash_password
from procureflow.db import Base, get_db
from procureflow.main import app
from procureflow.models import User
from procureflow.procurement import catalog


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _make_user(db, email: str, name: str = "Test User") -> User:
    user = User(name=name, email=email, password_hash=hash_password("correct-horse"), role="requester")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db_session):
    return _make_user(db_session, "buyer@example.com", "Buyer")


@pytest.fixture
def other_user(db_session):
    return _make_user(db_session, "other@example.com", "Other")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user.id)}"}


@pytest.fixture
def make_item(db_session, user):
    """Create catalog items directly through the service."""

    def _make(name="Laptop", category="Electronics", price=999.0, description=None, **kwargs):
        return catalog.create_item(
            db_session,
            name=name,
            category=category,
            description=description or f"{name} for office use",
            price=price,
            created_by_user_id=user.id,
            **kwargs,
        )

    return _make
