"""
Shared fixtures: in-memory SQLite, services wired to fake key sources and
a FastAPI TestClient.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from bitloot import config, database, jobs, models
from bitloot.database import get_db
from bitloot.encryption import KeyCipher
from bitloot.fulfillment import FulfillmentService
from bitloot.main import app, get_fulfillment_service
from bitloot.storage import LinkSigner

from .factories import FakeKeySource

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=database.engine)


@pytest.fixture(autouse=True)
def schema():
    models.Base.metadata.drop_all(bind=database.engine)
    models.Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cipher():
    return KeyCipher()


@pytest.fixture
def signer():
    return LinkSigner()


@pytest.fixture
def supplier():
    return FakeKeySource("supplier")


@pytest.fixture
def service(db, cipher, signer, supplier):
    return FulfillmentService(db, sources={"supplier": supplier}, cipher=cipher, signer=signer)


@pytest.fixture
def client(db, supplier, cipher, signer, monkeypatch):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fulfillment_service] = lambda: FulfillmentService(
        db, sources={"supplier": supplier}, cipher=cipher, signer=signer
    )
    monkeypatch.setattr(database, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(config, "FULFILLMENT_MAX_ATTEMPTS", 2)
    monkeypatch.setattr(config, "FULFILLMENT_RETRY_BASE_SECONDS", 0)
    monkeypatch.setattr(
        jobs, "build_service",
        lambda session: FulfillmentService(session, sources={"supplier": supplier}, cipher=cipher, signer=signer),
    )
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


