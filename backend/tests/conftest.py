from __future__ import annotations

import os

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ALLOWED_HOSTS"] = "testserver,localhost"
os.environ["LOG_JSON"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("STRIPE_SECRET_KEY", None)

from uuid import uuid4

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import courseshop.models  # noqa: F401
from courseshop.api.deps import get_billing_provider
from courseshop.db.base import Base
from courseshop.db.session import enable_sqlite_foreign_keys, get_db
from courseshop.main import app
from courseshop.models.course import Course
from courseshop.models.user import User
from tests.testkit import FakeProvider, FakeStore


@pytest.fixture()
def engine():
    eng = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(eng)
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture()
def db(engine):
    session = Session(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def client(db, provider):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    def _make(*, stripe_customer_id: str | None = None, email: str | None = None) -> User:
        user = User(
            id=uuid4(),
            email=email or f"student_{uuid4().hex[:8]}@example.com",
            name="Test Student",
            stripe_customer_id=stripe_customer_id,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_course(db):
    def _make(*, price_amount: int = 4900, is_published: bool = True) -> Course:
        course = Course(
            id=uuid4(),
            title="Intro to SQL",
            price_amount=price_amount,
            currency="usd",
            is_published=is_published,
        )
        db.add(course)
        db.commit()
        return course

    return _make
