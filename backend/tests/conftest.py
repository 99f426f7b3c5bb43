import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.dialects.sqlite import base as sqlite_base
from sqlalchemy.orm import sessionmaker

import dojoflow.models  # noqa: F401  register models with Base.metadata
from dojoflow.core.database import Base, get_db
from dojoflow.main import app as fastapi_app
from dojoflow.models import Organization, User
from dojoflow.services.auth import create_access_token, hash_password
from dojoflow.services.credits import initialize_credit_balance

# ---------------------------------------------------------------------------
# SQLite compatibility for PostgreSQL-specific types (JSONB, UUID)
# ---------------------------------------------------------------------------
sqlite_base.SQLiteTypeCompiler.visit_JSONB = lambda self, type_, **kw: self.visit_JSON(type_, **kw)

# In-memory SQLite for tests, no PostgreSQL needed
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_PASSWORD = "strongpassword123"


@pytest.fixture(autouse=True)
def setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Provide a test database session."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def org(db):
    """Create a test organization (the tenant that owns a credit balance)."""
    organization = Organization(name="Test Dojo")
    db.add(organization)
    db.commit()
    db.refresh(organization)
    return organization


@pytest.fixture
def org_id(org) -> uuid.UUID:
    """Convenience fixture returning the test org's UUID."""
    return org.id


@pytest.fixture
def balance(db, org):
    """Provision the test org with the standard 100-credit allowance."""
    return initialize_credit_balance(db, org.id, 100)


def _create_user(db, *, email, organization_id=None, is_admin=False, is_active=True) -> User:
    user = User(
        email=email,
        full_name="Test User",
        password_hash=hash_password(TEST_PASSWORD),
        organization_id=organization_id,
        is_admin=is_admin,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def make_user(db):
    """Factory for extra users."""

    def _make(**kwargs) -> User:
        return _create_user(db, **kwargs)

    return _make


@pytest.fixture
def user(db, org):
    """Dojo owner belonging to the test org."""
    return _create_user(db, email="owner@example.com", organization_id=org.id)


@pytest.fixture
def admin(db, org):
    """Platform admin (also a member of the test org)."""
    return _create_user(db, email="admin@example.com", organization_id=org.id, is_admin=True)


def auth_header(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def auth_headers(user):
    return auth_header(user)


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)


@pytest.fixture
def client(db):
    """TestClient with overridden DB dependency."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
