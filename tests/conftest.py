import os

# config reads the environment at import time; celery tasks open their own SessionLocal,
# so the test database has to be chosen here rather than through a get_db override
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["CELERY_ALWAYS_EAGER"] = "true"
os.environ["VALKEY_HOST"] = ""
os.environ["LOG_FILE"] = ""

import pytest
from fastapi.testclient import TestClient
from data.database import Base, SessionLocal, engine
from main import app  # import your FastAPI app
from services.cache import get_cache_client, get_mock_cache_client

# One in-memory cache for the whole run instead of whatever VALKEY_HOST points at
_TEST_CACHE = get_mock_cache_client()


def override_get_cache_client():
    return _TEST_CACHE


app.dependency_overrides[get_cache_client] = override_get_cache_client


def build_experiment_payload(name="Checkout Button", weights=(50, 50)):
    return {
        "name": name,
        "description": "A/B test on the checkout button",
        "hypothesis": "A green button converts better",
        "variants": [
            {"name": "control", "display_name": "Original Button", "is_control": True, "weight": weights[0]},
            {"name": "variant_b", "display_name": "Green Button", "weight": weights[1],
             "config": {"path": "/checkout", "parameters": {"color": "green"}}},
        ],
    }


@pytest.fixture(autouse=True, scope="session")
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def experiment_payload():
    return build_experiment_payload


@pytest.fixture
def experiment(client):
    """A running two-variant experiment, as returned by the start endpoint."""
    response = client.post("/experiments", json=build_experiment_payload())
    assert response.status_code == 201
    started = client.post(f"/experiments/{response.json()['id']}/start")
    assert started.status_code == 200
    return started.json()
