# conftest.py
import os
import random
import string
import pytest

# settings are read at import time
os.environ.setdefault("APP_SECRET", "test-secret")
os.environ.setdefault("DB_URL", "sqlite://")

from fastapi.testclient import TestClient

from pricebook.main import app
from pricebook.db import Base, SessionLocal, engine
from pricebook.models.core import User


def _suffix(k: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=k))

@pytest.fixture(scope="session")
def base_url():
    # TestClient resolves relative paths against its own host
    return ""

@pytest.fixture(scope="session")
def client():
    with TestClient(app) as c:
        yield c

@pytest.fixture
def rng_suffix():
    return _suffix()

@pytest.fixture
def signup(client, base_url):
    """Create a user and return bearer headers for it."""
    def _make(name: str = "Owner") -> dict:
        mobile = "9" + "".join(random.choices(string.digits, k=9))
        r = client.post(f"{base_url}/auth/signup", json={"name": name, "mobile": mobile, "password": "secret"})
        assert r.status_code == 200, f"/auth/signup failed: {r.text}"
        r = client.post(f"{base_url}/auth/login", params={"mobile": mobile, "password": "secret"})
        assert r.status_code == 200, f"/auth/login failed: {r.text}"
        return {"Authorization": f"Bearer {r.json()['access_token']}"}
    return _make

@pytest.fixture
def auth_headers(signup):
    return signup()

@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()

@pytest.fixture
def user_id(db):
    u = User(name="Service Test", mobile="8" + _suffix(9), pass_hash="x")
    db.add(u); db.commit()
    return u.id
