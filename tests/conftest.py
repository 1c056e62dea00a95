import os
# Override DATABASE_URL before any app imports to avoid PostgreSQL driver requirement
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
# No backoff sleeps between ledger retries in tests.
os.environ["CREDIT_LEDGER_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["CREDIT_LEDGER_RETRY_BACKOFF_MAX_SECONDS"] = "0"
os.environ["CREDITS_SIGNUP_GRANT"] = "1000"

import uuid
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from app.platform.database import Base, get_db
from app.main import app
from app.platform.middleware import _rate_limit_store
from app.components.credits.service import CreditLedgerService
from app.models.user import User
from app.models.organization import Organization

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Enable foreign key support for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def client(db):
    app.dependency_overrides[get_db] = override_get_db
    Base.metadata.create_all(bind=engine)
    # Clear in-memory rate limit state between tests to prevent 429 bleed-through
    _rate_limit_store.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    _rate_limit_store.clear()
    Base.metadata.drop_all(bind=engine)


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------

def create_org(db, name=None, balance=0, plan_tier="free") -> Organization:
    """Create an organization whose starting balance arrives as a ledger grant."""
    name = name or f"Org {_unique_id()}"
    org = Organization(name=name, slug=name.lower().replace(" ", "-"), plan_tier=plan_tier)
    db.add(org)
    db.commit()
    db.refresh(org)
    if balance:
        CreditLedgerService(db).grant(org.id, balance, "opening_balance")
    return org


@pytest.fixture
def org(db):
    """Organization starting at 1000 credits."""
    return create_org(db, balance=1000)


# ---------------------------------------------------------------------------
# Helper: verify a user's email directly in DB
# ---------------------------------------------------------------------------

def verify_user(email: str) -> None:
    """Mark a user as email-verified in the test DB (call after register)."""
    db = TestingSessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user:
            user.is_verified = True
            db.commit()
    finally:
        db.close()


def set_user_role(email: str, role: str) -> None:
    db = TestingSessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user:
            user.role = role
            db.commit()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Factory helpers: create test entities quickly and consistently
# ---------------------------------------------------------------------------

_counter = 0

def _unique_id() -> str:
    global _counter
    _counter += 1
    return f"{_counter}-{uuid.uuid4().hex[:8]}"


def register_user(client, email=None, password="TestPass123!", full_name="Test User", organization_name=None):
    """Register a user via the API. Returns the response."""
    email = email or f"user-{_unique_id()}@test.com"
    payload = {
        "email": email,
        "password": password,
        "full_name": full_name,
    }
    if organization_name is not None:
        payload["organization_name"] = organization_name
    resp = client.post("/api/v1/auth/register", json=payload)
    return resp


def login_user(client, email, password="TestPass123!"):
    """Log in a user via the API (FastAPI-Users JWT). Returns the response."""
    return client.post(
        "/api/v1/auth/jwt/login",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )


def auth_headers(client, email=None, password="TestPass123!", full_name="Test User", organization_name="TestOrg"):
    """Register, verify, login a user and return Authorization headers + email.

    Returns (headers_dict, email) tuple.
    """
    email = email or f"user-{_unique_id()}@test.com"
    reg = register_user(client, email=email, password=password, full_name=full_name, organization_name=organization_name)
    assert reg.status_code == 201, f"Registration failed: {reg.text}"
    verify_user(email)
    login_resp = login_user(client, email, password)
    assert login_resp.status_code == 200, f"Login failed: {login_resp.text}"
    token = login_resp.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}, email


def join_organization(client, organization_id, role="member"):
    """Register a user without an organization, then attach them to one directly.

    Returns (headers_dict, email) tuple.
    """
    headers, email = auth_headers(client, organization_name=None)
    db = TestingSessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        user.organization_id = organization_id
        user.role = role
        db.commit()
    finally:
        db.close()
    return headers, email
