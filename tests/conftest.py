"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any bookxchange import so
the cached Settings and the SQLAlchemy engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_bookxchange.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from bookxchange.config import get_settings  # noqa: E402
get_settings.cache_clear()

from bookxchange.main import app  # noqa: E402
from bookxchange.realtime import ConnectionManager  # noqa: E402
from bookxchange.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database and registry for each test."""
    Base.metadata.create_all(bind=engine)
    app.state.connections = ConnectionManager()

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Database session against fresh tables, for store-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def register(client, username: str, email: str = None, password: str = "secret123", location: str = None) -> dict:
    """Helper to register a user through the API."""
    body = {
        "username": username,
        "email": email or f"{username.lower()}@example.com",
        "password": password,
    }
    if location is not None:
        body["location"] = location
    response = client.post("/users", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def auth(user: dict) -> dict:
    """Headers identifying the given user to the API."""
    return {"X-User-Id": str(user["id"])}


def listing_body(**overrides) -> dict:
    """Valid POST /listings body."""
    body = {
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "category": "Computer Science",
        "condition": "Good",
        "description": "Third edition, some highlighting.",
        "price": "45.00",
        "listingType": "sell",
        "location": "Boston",
    }
    body.update(overrides)
    return body


def create_listing(client, owner: dict, **overrides) -> dict:
    """Helper to create a listing through the API."""
    response = client.post("/listings", json=listing_body(**overrides), headers=auth(owner))
    assert response.status_code == 201, response.text
    return response.json()


def send(client, sender: dict, receiver: dict, content: str, listing: dict = None) -> dict:
    """Helper to send a message through the API."""
    body = {"receiverId": receiver["id"], "content": content}
    if listing is not None:
        body["listingId"] = listing["id"]
    response = client.post("/messages", json=body, headers=auth(sender))
    assert response.status_code == 201, response.text
    return response.json()
