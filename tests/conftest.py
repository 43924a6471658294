"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from waconnect.core.auth import create_access_token
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner
from waconnect.infrastructure.meta_graph_client import MetaGraphClient
from waconnect.persistence.database import Base, configure_sqlite
from waconnect.persistence.models import *  # noqa: F401, F403
from waconnect.persistence.models.tenant import Tenant
from waconnect.settings import settings

from graph_helpers import GRAPH_URL, GraphStub


@pytest.fixture(autouse=True)
def meta_settings(monkeypatch):
    """Meta app configuration used across tests."""
    monkeypatch.setattr(settings, "environment", "development")
    monkeypatch.setattr(settings, "meta_app_id", "app-123")
    monkeypatch.setattr(settings, "meta_app_secret", "app-secret")
    monkeypatch.setattr(settings, "meta_oauth_redirect_uri", "https://api.test/api/v1/whatsapp/oauth/callback")
    monkeypatch.setattr(settings, "meta_webhook_verify_token", "verify-me")
    monkeypatch.setattr(settings, "oauth_state_secret", "state-secret")
    monkeypatch.setattr(settings, "meta_system_user_token", None)
    monkeypatch.setattr(settings, "meta_bsp_business_id", None)
    monkeypatch.setattr(settings, "provisioning_poll_interval_seconds", 0.0)
    monkeypatch.setattr(settings, "provisioning_poll_jitter_seconds", 0.0)
    monkeypatch.setattr(settings, "provisioning_max_attempts", 3)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so background tasks can open their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def tenant(db_session):
    tenant = Tenant(name="Harbor Grill")
    db_session.add(tenant)
    await db_session.commit()
    return tenant


@pytest.fixture
def auth_headers(tenant):
    token = create_access_token({"tenant_id": tenant.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def graph_stub():
    return GraphStub()


@pytest.fixture
def graph(graph_stub):
    return MetaGraphClient(base_url=GRAPH_URL, transport=httpx.MockTransport(graph_stub.handler))


@pytest.fixture
async def runner(session_factory, graph):
    runner = ProvisioningJobRunner(
        session_factory=session_factory,
        graph_factory=lambda: graph,
        sleep=AsyncMock(),
    )
    yield runner
    await runner.shutdown()


@pytest.fixture
async def client(session_factory, graph, runner):
    """Create a test FastAPI client bound to the test database and Graph stub."""
    from waconnect.api.deps import get_provisioning_runner
    from waconnect.infrastructure.meta_graph_client import get_graph_client
    from waconnect.main import app
    from waconnect.persistence.database import get_db

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_graph_client] = lambda: graph
    app.dependency_overrides[get_provisioning_runner] = lambda: runner

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
