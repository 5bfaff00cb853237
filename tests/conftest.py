from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Identity, TokenRejected, get_verifier
from database import ensure_indexes, get_db
from main import app
from payments import get_gateway


class FakeVerifier:
    """Accepts tokens of the form "token-<email>"."""

    def verify(self, token):
        if not token.startswith("token-"):
            raise TokenRejected("invalid token")
        email = token[len("token-"):]
        return Identity(uid=email.split("@")[0], email=email)


class FakeGateway:
    def __init__(self):
        self.calls = []

    def create_intent(self, amount_in_cents, currency="usd"):
        self.calls.append((amount_in_cents, currency))
        return f"pi_secret_{amount_in_cents}"


def auth(email):
    return {"Authorization": f"Bearer token-{email}"}


def future(days=30):
    return datetime.now(timezone.utc) + timedelta(days=days)


@pytest.fixture
def db():
    database = mongomock.MongoClient().petify_test
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_verifier] = lambda: FakeVerifier()
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    db["user"].insert_one({"email": "admin@example.com", "role": "admin", "is_banned": False})
    return "admin@example.com"
