from uuid import uuid4

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import auth
from database import get_db, server_timestamp
from main import create_app


@pytest.fixture
def db():
    return mongomock.MongoClient().get_database(f"test_{uuid4().hex}")


def make_user(db, uid, name=None, role="Farmer", disabled=False, email=None, photo_url=None):
    doc = {
        "_id": uid,
        "email": email or f"{uid}@example.com",
        "name": name or uid.title(),
        "role": role,
        "disabled": disabled,
        "createdAt": server_timestamp(),
    }
    if photo_url:
        doc["photoURL"] = photo_url
    db.users.insert_one(doc)
    profile = dict(doc)
    profile["uid"] = profile.pop("_id")
    return profile


def make_ad(db, owner_uid, status="approved", title="Gir cow for sale", **extra):
    now = server_timestamp()
    doc = {
        "title": title,
        "description": "Healthy, 4 years old",
        "category": "पशुधन",
        "subcategory": "गाय",
        "price": 45000,
        "location": "Shirur",
        "taluka": "Shirur",
        "photos": ["https://cdn.example.com/cow.jpg"],
        "mobileNumber": "9876543210",
        "userId": owner_uid,
        "userName": owner_uid.title(),
        "status": status,
        "createdAt": now,
        "updatedAt": now,
    }
    doc.update(extra)
    return str(db.ads.insert_one(doc).inserted_id)


def ad_form(**overrides):
    form = {
        "title": "Mahindra tractor",
        "description": "2015 model, well maintained",
        "category": "शेतीसाठी साधनं",
        "subcategory": "ट्रॅक्टर",
        "price": 350000,
        "location": "Manchar",
        "taluka": "Ambegaon",
        "photos": ["https://cdn.example.com/tractor.jpg"],
        "mobileNumber": "9123456780",
    }
    form.update(overrides)
    return form


def token_for(uid, email=None):
    claims = {"sub": uid}
    if email:
        claims["email"] = email
    return jwt.encode(claims, auth.AUTH_SECRET, algorithm=auth.AUTH_ALGORITHM)


def auth_headers(uid, email=None):
    return {"Authorization": f"Bearer {token_for(uid, email)}"}


class FlakyCollection:
    """Wraps a collection and swaps chosen methods for failing stand-ins."""

    def __init__(self, inner, overrides):
        self._inner = inner
        self._overrides = overrides

    def __getattr__(self, name):
        if name in self._overrides:
            return self._overrides[name]
        return getattr(self._inner, name)


class FlakyDatabase:
    def __init__(self, inner, failures):
        self._inner = inner
        self._failures = failures

    def __getattr__(self, name):
        return self[name]

    def __getitem__(self, name):
        collection = self._inner[name]
        if name in self._failures:
            return FlakyCollection(collection, self._failures[name])
        return collection


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def buyer(db):
    return make_user(db, "buyer", name="Asha Patil")


@pytest.fixture
def seller(db):
    return make_user(db, "seller", name="Ramesh Jadhav", photo_url="https://cdn.example.com/ramesh.jpg")


@pytest.fixture
def admin(db):
    return make_user(db, "admin", name="Admin", role="Admin")


@pytest.fixture
def app(db):
    app = create_app()
    app.dependency_overrides[get_db] = lambda: db
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
