import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

from auth import get_identity_provider
from database import USERS, ensure_indexes, get_db
from main import app
from payments import PaymentGatewayError, get_payment_gateway


class FakeIdentityProvider:
    """Maps opaque tokens to emails; anything unknown is rejected like an expired token."""

    def __init__(self):
        self.tokens = {}

    def issue(self, email):
        token = f"token-{email}"
        self.tokens[token] = email
        return token

    def verify(self, token):
        if token not in self.tokens:
            raise ValueError("Token expired")
        return {"email": self.tokens[token], "uid": token}


class FakeGateway:
    def __init__(self):
        self.calls = []
        self.error = None

    def create_payment_intent(self, amount):
        if self.error:
            raise PaymentGatewayError(self.error)
        self.calls.append(amount)
        return f"pi_{amount}_secret"


class FailingCollection:
    def __init__(self, inner, fail_on):
        self.inner = inner
        self.fail_on = fail_on

    def __getattr__(self, name):
        if name in self.fail_on:
            def _raise(*args, **kwargs):
                raise PyMongoError(f"{name} failed")
            return _raise
        return getattr(self.inner, name)


class PartiallyFailingDB:
    """Wraps a database so that selected operations on one collection raise."""

    def __init__(self, inner, collection, fail_on):
        self.inner = inner
        self.collection = collection
        self.fail_on = set(fail_on)

    def __getitem__(self, name):
        coll = self.inner[name]
        if name == self.collection:
            return FailingCollection(coll, self.fail_on)
        return coll


@pytest.fixture
def db():
    database = mongomock.MongoClient().parcelDB
    ensure_indexes(database)
    return database


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, identity, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(identity):
    def _headers(email):
        return {"Authorization": f"Bearer {identity.issue(email)}"}
    return _headers


@pytest.fixture
def admin_headers(db, auth_headers):
    db[USERS].insert_one({"email": "admin@x.com", "role": "admin"})
    return auth_headers("admin@x.com")
