"""Pytest fixtures and factories for the dispatch engine and API tests."""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker

# Must be set before the app modules read their configuration
os.environ["LOG_FILE"] = ""
os.environ["DISPATCH_ENABLED"] = "false"
os.environ["MAIL_BACKEND"] = "mock"
os.environ.pop("ADMIN_API_TOKEN", None)

# Ensure project root on sys.path so 'app' package resolves
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app, build_dispatch_services  # type: ignore
from app.database import Base, configure_sqlite  # type: ignore
from app.api import deps  # type: ignore
# All model modules must be imported before Base.metadata.create_all() so that
# back_populates targets exist.
from app.models.db import Campaign, EmailTask  # noqa: E402
from app.models.db.enums import CampaignStatus, TaskStatus  # noqa: E402
from app.services.mail_sender import SendResult  # noqa: E402
from app.services.status_reconciler import StatusReconciler  # noqa: E402
from app.services.task_store import TaskStore  # noqa: E402

# File-based SQLite so the claim-race tests get real concurrent connections
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_dispatch.db"
engine = configure_sqlite(create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
))
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Code that resolves SessionLocal at call time (health check) must see the test DB
import app.database as _app_database  # noqa: E402
_app_database.SessionLocal = TestingSessionLocal  # type: ignore
import app.main as _main_module  # noqa: E402
_main_module.SessionLocal = TestingSessionLocal  # type: ignore

ADMIN_TOKEN = "test-admin-token"
NOW = datetime(2025, 6, 2, 9, 1, 0, tzinfo=timezone.utc)

@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.remove(f"test_dispatch.db{suffix}")
        except OSError:
            pass

@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):  # type: ignore[unused-argument]
    """Claims look at every campaign, so each test starts from empty tables."""
    with TestingSessionLocal() as session:
        session.execute(delete(EmailTask))
        session.execute(delete(Campaign))
        session.commit()
    yield

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

@pytest.fixture()
def task_store():
    return TaskStore(TestingSessionLocal)

@pytest.fixture()
def reconciler(task_store):
    return StatusReconciler(task_store)

@pytest.fixture()
def dispatch_services():
    """Replicates the lifespan wiring (tests bypass lifespan) with a deterministic mock sender."""
    services = build_dispatch_services(
        TestingSessionLocal,
        mail_settings={"backend": "mock", "mock_failure_rate": 0.0, "mock_latency_seconds": 0.0},
    )
    for name, service in services.items():
        setattr(app.state, name, service)
    yield services
    services["dispatch_scheduler"].stop(timeout=5)

@pytest.fixture()
def client(dispatch_services):  # type: ignore[unused-argument]
    return TestClient(app)

@pytest.fixture()
def admin_headers(monkeypatch):
    import app.config as config
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}

# ---------- Fake senders ----------

class RecordingSender:
    """Send capability double: succeeds unless the address is listed in ``fail`` or ``explode``."""

    def __init__(self, *, fail: dict[str, str] | None = None, explode: dict[str, Exception] | None = None):
        self.fail = fail or {}
        self.explode = explode or {}
        self.sent: list = []

    def send(self, task):
        if task.email in self.explode:
            raise self.explode[task.email]
        self.sent.append(task)
        if task.email in self.fail:
            return SendResult.failure(self.fail[task.email])
        return SendResult.ok()

@pytest.fixture()
def recording_sender():
    return RecordingSender()

@pytest.fixture()
def sender_factory():
    return RecordingSender

# ---------- Data factory helpers ----------

@pytest.fixture()
def campaign_factory(db_session):
    def _create(name: str = "Campaign", *, status: CampaignStatus = CampaignStatus.SCHEDULED,
                sender_name: str | None = None, **aggregates):
        campaign = Campaign(name=name, status=status, sender_name=sender_name, **aggregates)
        db_session.add(campaign)
        db_session.commit()
        db_session.refresh(campaign)
        return campaign
    return _create

@pytest.fixture()
def task_factory(db_session):
    counter = {"n": 0}

    def _create(campaign: Campaign, *, due_at: datetime | None = None, status: TaskStatus = TaskStatus.PENDING,
                email: str | None = None, is_deleted: bool = False, claimed_at: datetime | None = None,
                message: str = "Hello there"):
        counter["n"] += 1
        task = EmailTask(
            campaign_id=campaign.id,
            email=email or f"user{counter['n']}@example.com",
            message=message,
            due_at=due_at or NOW - timedelta(minutes=1),
            status=status,
            claimed_at=claimed_at,
            is_deleted=is_deleted,
        )
        db_session.add(task)
        db_session.commit()
        db_session.refresh(task)
        return task
    return _create

@pytest.fixture()
def fetch_task():
    def _fetch(task_id: int) -> EmailTask:
        with TestingSessionLocal() as session:
            task = session.get(EmailTask, task_id)
            session.expunge(task)
            return task
    return _fetch

@pytest.fixture()
def fetch_campaign():
    def _fetch(campaign_id: int) -> Campaign:
        with TestingSessionLocal() as session:
            campaign = session.get(Campaign, campaign_id)
            session.expunge(campaign)
            return campaign
    return _fetch
