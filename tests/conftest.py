import os
from datetime import timedelta

import pytest


# main builds a module-level app from the environment on import.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from fastapi.testclient import TestClient
from sqlmodel import Session

from config import Settings
from db import create_db_and_tables, make_engine
from main import create_app
from models import Item, utcnow
from schemas import BorrowerIdentity, BorrowerInfo, ItemCreate
from services.accounting import AccountingService
from services.activity import ActivityRecorder
from services.uploads import ImageStore

ADMIN_EMAIL = "admin@example.com"


def build_settings(tmp_path, database_url="sqlite://"):
    return Settings(
        database_url=database_url,
        secret_key="test-secret",
        admin_emails=frozenset({ADMIN_EMAIL}),
        upload_dir=tmp_path / "uploads",
        store_retry_attempts=5,
        store_retry_backoff=0.01,
    )


def build_accounting(engine, settings):
    return AccountingService(
        engine,
        ActivityRecorder(engine),
        ImageStore(settings.upload_dir),
        retry_attempts=settings.store_retry_attempts,
        retry_backoff=settings.store_retry_backoff,
    )


@pytest.fixture
def settings(tmp_path):
    return build_settings(tmp_path)


@pytest.fixture
def engine(settings):
    engine = make_engine(settings)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def accounting(engine, settings):
    return build_accounting(engine, settings)


@pytest.fixture
def make_item(accounting):
    def _make(name="Oscilloscope", quantity=5, **fields):
        return accounting.create_item(
            ItemCreate(name=name, quantity=quantity, **fields), actor=ADMIN_EMAIL
        )

    return _make


@pytest.fixture
def stock(engine):
    """Read an item's available quantity from a fresh session."""

    def _stock(item_id):
        with Session(engine) as fresh:
            return fresh.get(Item, item_id).quantity

    return _stock


@pytest.fixture
def student():
    return BorrowerInfo(
        name="Rahim Uddin",
        email="rahim@example.com",
        phone="01700000000",
        role="student",
        department="EEE",
        section="A",
        designation="Lab assistant",
        registration_id="2021-001",
    )


@pytest.fixture
def teacher():
    return BorrowerInfo(
        name="Nusrat Jahan",
        email="nusrat@example.com",
        phone="01800000000",
        role="teacher",
        department="CSE",
        section="B",
        designation="Lecturer",
        registration_id="T-77",
    )


@pytest.fixture
def student_identity(student):
    return BorrowerIdentity(
        name=student.name,
        email=str(student.email),
        registration_id=student.registration_id,
    )


@pytest.fixture
def next_week():
    return utcnow() + timedelta(days=7)


@pytest.fixture
def last_week():
    return utcnow() - timedelta(days=7)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_client(client):
    response = client.post(
        "/register",
        json={"email": ADMIN_EMAIL, "name": "Lab Admin", "password": "admin-pass-123"},
    )
    assert response.status_code == 201
    return client


@pytest.fixture
def user_client(app, client):
    # Shares the app (and its database) with ``client``; no second lifespan.
    other = TestClient(app)
    response = other.post(
        "/register",
        json={"email": "member@example.com", "name": "Lab Member", "password": "member-pass-123"},
    )
    assert response.status_code == 201
    return other


@pytest.fixture
def file_settings(tmp_path):
    # A real file so concurrent connections contend on SQLite's locks.
    return build_settings(tmp_path, f"sqlite:///{tmp_path / 'loans.db'}")


@pytest.fixture
def file_engine(file_settings):
    engine = make_engine(file_settings)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_accounting(file_engine, file_settings):
    return build_accounting(file_engine, file_settings)
