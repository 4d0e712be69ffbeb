import os
import sys
import uuid
from datetime import UTC, datetime
from types import ModuleType
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any usage_billing imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("usage_billing.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock usage_billing.config to prevent .env loading
mock_config_module = ModuleType("usage_billing.config")

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-secret"


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    jwt_secret = JWT_SECRET
    jwt_algorithm = "HS256"
    admin_api_token = "admin-token-for-tests"
    stripe_webhook_secret = WEBHOOK_SECRET
    stripe_webhook_tolerance_seconds = 300
    stripe_price_starter_monthly = "price_starter_monthly"
    stripe_price_starter_annual = "price_starter_annual"
    stripe_price_pro_monthly = "price_pro_monthly"
    stripe_price_pro_annual = "price_pro_annual"
    billing_sweep_workers = 4
    billing_sweep_account_timeout_seconds = 30.0
    webhook_event_retention_days = 30
    usage_warning_threshold = 0.9
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any usage_billing imports
sys.modules["usage_billing.config"] = mock_config_module
sys.modules["usage_billing.db"] = mock_db_module

os.environ["JWT_SECRET"] = JWT_SECRET
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
import usage_billing.models  # noqa: E402,F401
from tests.factories import access_token, add_project, create_account  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def thread_session_factory(tmp_path):
    """File-backed database for tests that write from several threads.

    The in-memory StaticPool engine shares one connection, so it cannot
    exercise real concurrent transactions.
    """
    file_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'concurrency.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    TestBase.metadata.create_all(file_engine)
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        file_engine.dispose()


@pytest.fixture()
def account(db_session):
    return create_account(db_session)


@pytest.fixture()
def project(db_session, account):
    return add_project(db_session, account.id)


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from usage_billing.api.deps import get_db as api_get_db
    from usage_billing.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    # A fresh client address per test keeps the widget rate limit isolated
    headers = {"x-forwarded-for": f"test-{uuid.uuid4().hex}"}
    with (
        patch("usage_billing.middleware.rate_limit._get_redis", return_value=None),
        TestClient(app, raise_server_exceptions=False, headers=headers) as test_client,
    ):
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(account):
    """Authorization headers for the ``account`` fixture."""
    return {"Authorization": f"Bearer {access_token(str(account.id))}"}


@pytest.fixture()
def admin_headers():
    token = access_token(str(uuid.uuid4()), roles=["admin"])
    return {"Authorization": f"Bearer {token}"}
