"""
Shared fixtures: an in-memory MongoDB (mongomock) and a recording Pusher
stand-in, wired into the app through dependency overrides.
"""
import json

import mongomock
import pytest
from fastapi.testclient import TestClient

from main import app, create_access_token
from database import get_db
from realtime import get_pusher


class FakePusher:
    """Records triggers; optionally fails them."""

    def __init__(self):
        self.triggered = []
        self.fail_trigger = False

    def trigger(self, channels, event_name, data):
        if self.fail_trigger:
            raise RuntimeError("broker unavailable")
        self.triggered.append((channels, event_name, data))

    def authenticate(self, channel, socket_id, custom_data=None):
        # the real client returns channel_data as a JSON string
        return {"auth": f"key:{socket_id}:{channel}", "channel_data": json.dumps(custom_data)}


@pytest.fixture
def db():
    return mongomock.MongoClient()["build-together-test"]


@pytest.fixture
def broker():
    return FakePusher()


@pytest.fixture
def client(db, broker):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_pusher] = lambda: broker
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id: str, name: str = "Test User", email: str = "test@example.com") -> dict:
    token = create_access_token({"sub": user_id, "name": name, "email": email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice():
    return {"id": "650000000000000000000001", "name": "Alice", "email": "alice@example.com"}


@pytest.fixture
def bob():
    return {"id": "650000000000000000000002", "name": "Bob", "email": "bob@example.com"}


@pytest.fixture
def headers_for():
    def _headers(user):
        return auth_headers(user["id"], user["name"], user["email"])
    return _headers


@pytest.fixture
def valid_property():
    return {
        "title": "Lakeside duplex",
        "description": "Two units, shared garden",
        "location": "Pokhara",
        "expected_members": 100,
        "per_member_cost": 5000,
        "images": ["https://img.example.com/a.jpg", "https://img.example.com/b.jpg"],
    }


@pytest.fixture
def project_id(client, alice, headers_for, valid_property):
    resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
    assert resp.status_code == 201
    return resp.json()["projectId"]
