"""
Pytest configuration and fixtures
"""
import os

# Settings are read at import time of app.core.config
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-realtime-logins")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.engine import Engine

from app.main import app
from app.db.base import Base
from app.core.deps import get_db, get_device_client_factory, get_session_factory, get_sync_orchestrator

from app.models import Device, Employee  # noqa: F401  (register tables)
from app.tests.fakes import FakeFleet
from app.services.realtime_watch import SessionRegistry
from app.services.sync_orchestrator import SyncOrchestrator


# Use in-memory SQLite for testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Enable foreign keys for SQLite
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db):
    """Session factory bound to the test engine (tables created by `db`)"""
    return TestingSessionLocal


@pytest.fixture(scope="function")
def fleet():
    return FakeFleet()


@pytest.fixture(scope="function")
def orchestrator(session_factory, fleet):
    """Sequential orchestrator; SQLite in-memory is shared by one connection"""
    return SyncOrchestrator(session_factory, fleet, max_workers=1)


@pytest.fixture(scope="function")
def registry(session_factory, fleet):
    """Realtime registry with a long poll interval so tests drive polls explicitly"""
    registry = SessionRegistry(
        session_factory,
        client_factory=fleet,
        poll_interval=3600,
        health_interval=3600,
        window_seconds=5,
    )
    yield registry
    registry.shutdown()


@pytest.fixture(scope="function")
def employee(db):
    """Active directory user with badge 138"""
    emp = Employee(badge_number="138", name="Maria Santos", department="Finance", active=True)
    db.add(emp)
    db.commit()
    db.refresh(emp)
    return emp


@pytest.fixture(scope="function")
def device(db):
    """Enabled terminal"""
    dev = Device(alias="Main Gate", ip="10.0.0.11", port=4370, serial_number="SN-0001", firmware_version="Ver 6.60")
    db.add(dev)
    db.commit()
    db.refresh(dev)
    return dev


@pytest.fixture(scope="function")
def client(db, fleet, orchestrator, registry):
    """Test client fixture with database, device and registry overrides"""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_device_client_factory] = lambda: fleet
    app.dependency_overrides[get_sync_orchestrator] = lambda: orchestrator
    app.state.session_registry = registry
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.session_registry = None
