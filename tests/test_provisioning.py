"""Tests for the provisioning poller and background job runner."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from waconnect.domain.services.identity_resolution import ResolutionOutcome, ResolutionState
from waconnect.domain.services.integration_state import IntegrationStateService
from waconnect.domain.services.provisioning_poller import ProvisioningJobRunner, ProvisioningPoller
from waconnect.persistence.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.repositories.integration_log_repository import IntegrationLogRepository
from waconnect.persistence.repositories.provisioning_job_repository import ProvisioningJobRepository

from graph_helpers import stub_empty_discovery

UNRESOLVED = ResolutionOutcome(state=ResolutionState.UNRESOLVED)


def _engine(*outcomes: ResolutionOutcome) -> MagicMock:
    engine = MagicMock()
    engine.discover = AsyncMock(side_effect=list(outcomes))
    return engine


class TestProvisioningPoller:
    """Bounded discovery loop."""

    @pytest.mark.asyncio
    async def test_exhausts_after_max_attempts(self):
        engine = _engine(UNRESOLVED, UNRESOLVED, UNRESOLVED)
        sleep = AsyncMock()
        poller = ProvisioningPoller(engine, interval_seconds=3.0, sleep=sleep)

        result = await poller.poll_until_found(1, "B1", "token", max_attempts=3)

        assert result.found is False
        assert result.attempts_used == 3
        assert engine.discover.await_count == 3
        # No sleep after the final attempt
        assert sleep.await_count == 2
        sleep.assert_awaited_with(3.0)

    @pytest.mark.asyncio
    async def test_stops_on_first_success(self):
        found = ResolutionOutcome(state=ResolutionState.FOUND, waba_id="W1", strategy="me_waba")
        engine = _engine(UNRESOLVED, found)
        sleep = AsyncMock()
        poller = ProvisioningPoller(engine, interval_seconds=1.0, sleep=sleep)

        result = await poller.poll_until_found(1, "B1", "token", max_attempts=5)

        assert result.found is True
        assert result.attempts_used == 2
        assert result.outcome.waba_id == "W1"
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_reports_each_attempt(self):
        engine = _engine(UNRESOLVED, UNRESOLVED)
        seen = []

        async def on_attempt(attempt):
            seen.append(attempt)

        poller = ProvisioningPoller(engine, interval_seconds=0, sleep=AsyncMock())
        await poller.poll_until_found(1, None, "token", max_attempts=2, on_attempt=on_attempt)

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_deadline_stops_early(self):
        engine = _engine(UNRESOLVED, UNRESOLVED, UNRESOLVED)
        sleep = AsyncMock()
        poller = ProvisioningPoller(engine, interval_seconds=60.0, sleep=sleep)

        result = await poller.poll_until_found(
            1, "B1", "token", max_attempts=3, deadline=datetime.utcnow() + timedelta(seconds=5)
        )

        assert result.found is False
        assert result.deadline_reached is True
        assert result.attempts_used == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_jitter_adds_to_interval(self, monkeypatch):
        monkeypatch.setattr("waconnect.domain.services.provisioning_poller.random.uniform", lambda a, b: 0.5)
        sleep = AsyncMock()
        poller = ProvisioningPoller(_engine(UNRESOLVED, UNRESOLVED), interval_seconds=2.0, jitter_seconds=1.0, sleep=sleep)

        await poller.poll_until_found(1, None, "token", max_attempts=2)

        sleep.assert_awaited_once_with(2.5)


async def _provisioning_integration(db_session, tenant_id):
    await IntegrationStateService(db_session).connect(
        tenant_id,
        business_id="B1",
        waba_id="W9",
        access_token="user-token",
        connection_status=ConnectionStatus.PROVISIONING,
    )
    await db_session.commit()


class TestProvisioningJobRunner:
    """Background job lifecycle."""

    @pytest.mark.asyncio
    async def test_job_found(self, db_session, session_factory, graph, graph_stub, tenant):
        stub_empty_discovery(graph_stub)
        graph_stub.data("/me/whatsapp_business_accounts", [{"id": "W9"}])
        on_found = AsyncMock()
        runner = ProvisioningJobRunner(
            session_factory=session_factory, graph_factory=lambda: graph, sleep=AsyncMock(), on_found=on_found
        )

        job = await runner.start(db_session, tenant.id, "B1", "user-token", max_attempts=3)
        await runner.wait(job.id)

        async with session_factory() as session:
            stored = await ProvisioningJobRepository(session).get_latest(tenant.id)
        assert stored.status == ProvisioningJobStatus.FOUND.value
        assert stored.waba_id == "W9"
        assert stored.attempts_used == 1
        assert stored.finished_at is not None
        on_found.assert_awaited_once()
        assert on_found.await_args.args[1] == tenant.id
        assert on_found.await_args.args[2].waba_id == "W9"

    @pytest.mark.asyncio
    async def test_job_found_completes_connection(self, db_session, session_factory, graph, graph_stub, tenant):
        await _provisioning_integration(db_session, tenant.id)
        stub_empty_discovery(graph_stub)
        graph_stub.data("/me/whatsapp_business_accounts", [{"id": "W9"}])
        graph_stub.on("POST", "/W9/subscribed_apps", success=True)
        graph_stub.data(
            "/W9/phone_numbers",
            [{"id": "PN1", "display_phone_number": "+1 555-000-1111", "verified_name": "Harbor Grill"}],
        )
        runner = ProvisioningJobRunner(session_factory=session_factory, graph_factory=lambda: graph, sleep=AsyncMock())

        job = await runner.start(db_session, tenant.id, "B1", "user-token")
        await runner.wait(job.id)

        async with session_factory() as session:
            integration = await IntegrationStateService(session).get(tenant.id)
        assert integration.connection_status == ConnectionStatus.ACTIVE.value
        assert integration.phone_number_id == "PN1"

    @pytest.mark.asyncio
    async def test_job_exhausted(self, db_session, session_factory, graph, graph_stub, tenant):
        await _provisioning_integration(db_session, tenant.id)
        stub_empty_discovery(graph_stub)
        on_found = AsyncMock()
        runner = ProvisioningJobRunner(
            session_factory=session_factory, graph_factory=lambda: graph, sleep=AsyncMock(), on_found=on_found
        )

        job = await runner.start(db_session, tenant.id, "B1", "user-token", max_attempts=2)
        await runner.wait(job.id)

        async with session_factory() as session:
            stored = await ProvisioningJobRepository(session).get_latest(tenant.id)
            integration = await IntegrationStateService(session).get(tenant.id)
            entries = await IntegrationLogRepository(session).list_for_tenant(tenant.id, step="provisioning_poll")
        assert stored.status == ProvisioningJobStatus.EXHAUSTED.value
        assert stored.attempts_used == 2
        assert integration.connection_status == ConnectionStatus.AWAITING_WABA_CREATION.value
        assert [e.success for e in entries] == [False]
        on_found.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, db_session, session_factory, graph, graph_stub, tenant):
        stub_empty_discovery(graph_stub)
        sleeping = asyncio.Event()

        async def blocking_sleep(_delay):
            sleeping.set()
            await asyncio.Event().wait()

        runner = ProvisioningJobRunner(session_factory=session_factory, graph_factory=lambda: graph, sleep=blocking_sleep)

        job = await runner.start(db_session, tenant.id, "B1", "user-token", max_attempts=5)
        await asyncio.wait_for(sleeping.wait(), timeout=5)

        cancelled = await runner.cancel(db_session, tenant.id)
        await runner.wait(job.id)

        assert cancelled.status == ProvisioningJobStatus.CANCELLED.value
        async with session_factory() as session:
            stored = await ProvisioningJobRepository(session).get_latest(tenant.id)
        assert stored.status == ProvisioningJobStatus.CANCELLED.value
        assert stored.attempts_used == 1

    @pytest.mark.asyncio
    async def test_cancel_without_job(self, db_session, runner, tenant):
        assert await runner.cancel(db_session, tenant.id) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_job_failed(self, db_session, session_factory, graph, tenant, monkeypatch):
        monkeypatch.setattr(
            "waconnect.domain.services.provisioning_poller.IdentityResolutionEngine.discover",
            AsyncMock(side_effect=RuntimeError("graph unavailable")),
        )
        runner = ProvisioningJobRunner(session_factory=session_factory, graph_factory=lambda: graph, sleep=AsyncMock())

        job = await runner.start(db_session, tenant.id, "B1", "user-token")
        await runner.wait(job.id)

        async with session_factory() as session:
            stored = await ProvisioningJobRepository(session).get_latest(tenant.id)
        assert stored.status == ProvisioningJobStatus.FAILED.value
        assert stored.error_message == "graph unavailable"
        assert stored.finished_at is not None

    @pytest.mark.asyncio
    async def test_running_row_is_live_only_with_task_and_time_left(self, runner):
        job = ProvisioningJob(id=41, tenant_id=1, status=ProvisioningJobStatus.RUNNING.value, max_attempts=3)
        assert runner.is_live(job) is False

        runner._tasks[job.id] = asyncio.create_task(asyncio.Event().wait())
        assert runner.is_live(job) is True

        job.deadline_at = datetime.utcnow() - timedelta(seconds=1)
        assert runner.is_live(job) is False

        job.deadline_at = None
        job.status = ProvisioningJobStatus.FOUND.value
        assert runner.is_live(job) is False
