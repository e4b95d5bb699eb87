import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JOB_WORKER_ENABLED", "false")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from switchboard import models  # noqa: E402,F401
from switchboard.database import Base, get_db  # noqa: E402
from switchboard.dependencies import get_session_manager  # noqa: E402
from switchboard.main import app  # noqa: E402
from switchboard.models import Tenant, TenantCredential, TenantSubscription  # noqa: E402
from switchboard.services.session_manager import SessionManager  # noqa: E402
from switchboard.services.tenant_context import TenantContext  # noqa: E402


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    """In-memory SQLite session with the full schema."""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def make_tenant(db):
    def _make_tenant(name="Acme", status="active", phone_number_id=None, message_limit=None, messages_used=0):
        tenant = Tenant(name=name, status=status, created_at=datetime.now(timezone.utc))
        db.add(tenant)
        db.flush()
        if phone_number_id:
            db.add(
                TenantCredential(
                    tenant_id=tenant.id,
                    access_token=f"token-{name}",
                    phone_number_id=phone_number_id,
                    webhook_verify_token=f"verify-{name}",
                    is_active=True,
                )
            )
        if message_limit is not None:
            db.add(
                TenantSubscription(
                    tenant_id=tenant.id,
                    status="active",
                    message_limit=message_limit,
                    messages_used=messages_used,
                )
            )
        db.commit()
        return tenant

    return _make_tenant


@pytest.fixture
def tenant(make_tenant):
    return TenantContext(tenant_id=make_tenant("Acme").id)


@pytest.fixture
def other_tenant(make_tenant):
    return TenantContext(tenant_id=make_tenant("Globex").id)


class FakeConnection:
    def __init__(self):
        self.sent = []
        self.media = []
        self.closed = False

    async def send_text(self, address, content):
        self.sent.append((address, content))
        return f"wamid.out.{len(self.sent)}"

    async def send_media(self, address, media_ref, *, media_type="image", caption=None):
        self.media.append((address, media_ref, media_type, caption))
        return f"wamid.media.{len(self.media)}"

    async def close(self):
        self.closed = True


class FakeBridge:
    """Bridge that opens instantly and lets tests push events through ``emitters``."""

    def __init__(self):
        self.opened = []
        self.emitters = {}
        self.connections = []

    async def open(self, session_id, tenant_id, emit):
        self.opened.append(session_id)
        self.emitters[session_id] = emit
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


@pytest.fixture
def fake_bridge():
    return FakeBridge()


@pytest.fixture
def session_manager(fake_bridge):
    return SessionManager(fake_bridge)


@pytest.fixture
def client(db, session_manager):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_manager] = lambda: session_manager
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(session_manager.shutdown)
    app.dependency_overrides.clear()
