"""
Root test configuration and fixtures.

Services under test commit and roll back on their own, so every test gets a
fresh in-memory SQLite database instead of a wrapping transaction.

Shared fixtures:
- db_engine / db_session: isolated database per test
- tenant, other_tenant, application, user_type, pricing, license: seeded catalog
- make_identity / make_yaml_config: factories
"""

import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hub.config.settings import reset_settings

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_JWT_SECRET = "test-secret-key-for-identity-tokens"

REPO_CONFIG = Path(__file__).resolve().parents[3] / "config" / "entitlements.yml"


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture(autouse=True)
def hub_settings_env(monkeypatch):
    """Point settings at the repository config with a known JWT secret."""
    for name in list(os.environ):
        if name.startswith("HUB_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("HUB_CONFIG_PATH", str(REPO_CONFIG))
    monkeypatch.setenv("HUB_JWT_SECRET", TEST_JWT_SECRET)
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """SQLite in-memory engine with every table created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from hub.db_base import Base
    import hub.models  # noqa: F401 - required to register all model metadata

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


# =============================================================================
# Seed data
# =============================================================================

PRICING_START = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def tenant(db_session):
    from hub.models import Tenant, TenantStatus

    tenant = Tenant(
        name="Clinica Alfa",
        slug="clinica-alfa",
        schema_name="tenant_clinica_alfa",
        status=TenantStatus.ACTIVE.value,
    )
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def other_tenant(db_session):
    from hub.models import Tenant, TenantStatus

    tenant = Tenant(
        name="Clinica Beta",
        slug="clinica-beta",
        schema_name="tenant_clinica_beta",
        status=TenantStatus.ACTIVE.value,
    )
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def application(db_session):
    from hub.models import Application

    application = Application(
        slug="tq",
        name="Transcription Quote",
        description="Medical transcription quotation system",
        requires_provisioning=False,
    )
    db_session.add(application)
    db_session.commit()
    return application


@pytest.fixture
def user_type(db_session):
    from hub.models import UserType

    user_type = UserType(slug="operations", name="Operations", hierarchy_level=0)
    db_session.add(user_type)
    db_session.commit()
    return user_type


@pytest.fixture
def pricing(db_session, application, user_type):
    """100.00 BRL monthly, open ended since 2025-01-01."""
    from hub.models import PricingEntry

    entry = PricingEntry(
        application_id=application.id,
        user_type_id=user_type.id,
        price=Decimal("100.00"),
        currency="BRL",
        billing_cycle="monthly",
        valid_from=PRICING_START,
        valid_to=None,
        active=True,
    )
    db_session.add(entry)
    db_session.commit()
    return entry


@pytest.fixture
def license(db_session, tenant, application):
    """Active two-seat license of `tenant` for `application`."""
    from hub.models import License

    license = License(
        tenant_id=tenant.id,
        application_id=application.id,
        status="active",
        active=True,
        seats_purchased=2,
        seats_used=0,
    )
    db_session.add(license)
    db_session.commit()
    return license


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_identity():
    """
    Factory for caller identities.

    Usage:
        identity = make_identity("user-1", tenant.id, allowed_apps=["tq"])
    """
    from hub.platform.identity import build_identity

    def _make(user_id="user-1", tenant_id=None, allowed_apps=(), role=None, platform_role=None):
        return build_identity(
            user_id=user_id,
            tenant_id=tenant_id,
            allowed_apps=list(allowed_apps),
            role=role,
            platform_role=platform_role,
        )
    return _make


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("entitlements.yml", {"audit": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
