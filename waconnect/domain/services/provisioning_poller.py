"""Wait for a newly created WhatsApp account to become discoverable.

The poll runs as a background asyncio task so the request that triggered
it returns immediately; progress lives in a ProvisioningJob row that the
client reads back.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from waconnect.core.tenant_context import set_tenant_context
from waconnect.domain.services.audit_service import IntegrationAuditService
from waconnect.domain.services.identity_resolution import (
    IdentityResolutionEngine,
    ResolutionContext,
    ResolutionOutcome,
    ResolutionState,
)
from waconnect.infrastructure.meta_graph_client import MetaGraphClient, get_graph_client
from waconnect.persistence.database import AsyncSessionLocal
from waconnect.persistence.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus
from waconnect.persistence.repositories.integration_repository import WhatsAppIntegrationRepository
from waconnect.persistence.repositories.provisioning_job_repository import ProvisioningJobRepository
from waconnect.settings import settings

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
FoundCallback = Callable[[AsyncSession, int, ResolutionOutcome, str], Awaitable[None]]


@dataclass
class PollResult:
    found: bool
    attempts_used: int
    outcome: ResolutionOutcome | None = None
    deadline_reached: bool = False


class ProvisioningPoller:
    """Bounded discovery loop with a fixed interval and optional jitter."""

    def __init__(
        self,
        engine: IdentityResolutionEngine,
        interval_seconds: float | None = None,
        jitter_seconds: float | None = None,
        sleep: SleepFunc | None = None,
    ):
        self.engine = engine
        self.interval = settings.provisioning_poll_interval_seconds if interval_seconds is None else interval_seconds
        self.jitter = settings.provisioning_poll_jitter_seconds if jitter_seconds is None else jitter_seconds
        self._sleep = sleep or asyncio.sleep

    def _delay(self) -> float:
        if self.jitter > 0:
            return self.interval + random.uniform(0, self.jitter)
        return self.interval

    async def poll_until_found(
        self,
        tenant_id: int,
        business_id: str | None,
        access_token: str,
        max_attempts: int | None = None,
        deadline: datetime | None = None,
        on_attempt: Callable[[int], Awaitable[None]] | None = None,
    ) -> PollResult:
        """Run discovery up to max_attempts times.

        Stops early on the first hit. Not finding the account is a normal
        outcome meaning "retry later". Cancelling the calling task stops the
        loop at the next await.
        """
        attempts = settings.provisioning_max_attempts if max_attempts is None else max_attempts
        context = ResolutionContext(tenant_id=tenant_id, user_token=access_token, business_id=business_id)

        for attempt in range(1, attempts + 1):
            outcome = await self.engine.discover(context)
            if on_attempt is not None:
                await on_attempt(attempt)
            if outcome.state == ResolutionState.FOUND:
                logger.info("Provisioned account discovered", extra={"attempt": attempt, "waba_id": outcome.waba_id})
                return PollResult(found=True, attempts_used=attempt, outcome=outcome)
            if attempt == attempts:
                break

            delay = self._delay()
            if deadline is not None and datetime.utcnow() + timedelta(seconds=delay) > deadline:
                logger.info("Provisioning deadline reached", extra={"attempt": attempt})
                return PollResult(found=False, attempts_used=attempt, deadline_reached=True)
            await self._sleep(delay)

        return PollResult(found=False, attempts_used=attempts)


class ProvisioningJobRunner:
    """Starts, tracks, and cancels provisioning tasks."""

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        graph_factory: Callable[[], MetaGraphClient] | None = None,
        sleep: SleepFunc | None = None,
        on_found: FoundCallback | None = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.graph_factory = graph_factory or get_graph_client
        self.sleep = sleep
        self.on_found = on_found or self._complete_found
        self._tasks: dict[int, asyncio.Task] = {}

    async def _complete_found(
        self, session: AsyncSession, tenant_id: int, outcome: ResolutionOutcome, access_token: str
    ) -> None:
        # Import here to avoid circular imports
        from waconnect.domain.services.onboarding_service import OnboardingService

        service = OnboardingService(session, graph=self.graph_factory(), runner=self)
        await service.complete_connection(tenant_id, outcome, access_token)

    async def start(
        self,
        session: AsyncSession,
        tenant_id: int,
        business_id: str | None,
        access_token: str,
        max_attempts: int | None = None,
        timeout_seconds: float | None = None,
    ) -> ProvisioningJob:
        """Create a job row (committed) and launch its task."""
        attempts = settings.provisioning_max_attempts if max_attempts is None else max_attempts
        deadline_at = None
        if timeout_seconds:
            deadline_at = datetime.utcnow() + timedelta(seconds=timeout_seconds)

        job = await ProvisioningJobRepository(session).create(
            tenant_id,
            business_id=business_id,
            status=ProvisioningJobStatus.RUNNING.value,
            attempts_used=0,
            max_attempts=attempts,
            deadline_at=deadline_at,
        )
        await session.commit()

        task = asyncio.create_task(
            self._run(job.id, tenant_id, business_id, access_token, attempts, deadline_at),
            name=f"provisioning-job-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        logger.info("Provisioning job started", extra={"job_id": job.id, "max_attempts": attempts})
        return job

    async def _run(
        self,
        job_id: int,
        tenant_id: int,
        business_id: str | None,
        access_token: str,
        max_attempts: int,
        deadline_at: datetime | None,
    ) -> None:
        set_tenant_context(tenant_id)
        async with self.session_factory() as session:
            jobs = ProvisioningJobRepository(session)
            job = await jobs.get_by_id(tenant_id, job_id)
            if job is None:
                return

            engine = IdentityResolutionEngine(session, self.graph_factory())
            poller = ProvisioningPoller(engine, sleep=self.sleep)

            async def record_attempt(attempt: int) -> None:
                job.attempts_used = attempt
                await session.commit()

            try:
                result = await poller.poll_until_found(
                    tenant_id,
                    business_id,
                    access_token,
                    max_attempts=max_attempts,
                    deadline=deadline_at,
                    on_attempt=record_attempt,
                )
            except asyncio.CancelledError:
                logger.info("Provisioning job cancelled", extra={"job_id": job_id})
                raise
            except Exception as e:
                logger.exception("Provisioning job failed", extra={"job_id": job_id})
                await session.rollback()
                job = await jobs.get_by_id(tenant_id, job_id)
                job.status = ProvisioningJobStatus.FAILED.value
                job.error_message = str(e)
                job.finished_at = datetime.utcnow()
                await session.commit()
                return

            audit = IntegrationAuditService(session)
            if result.found:
                job.status = ProvisioningJobStatus.FOUND.value
                job.waba_id = result.outcome.waba_id
                job.finished_at = datetime.utcnow()
                await audit.log_step(
                    tenant_id,
                    "provisioning_poll",
                    success=True,
                    details={"attempts_used": result.attempts_used, "waba_id": result.outcome.waba_id},
                )
                await session.commit()
                await self.on_found(session, tenant_id, result.outcome, access_token)
                return

            job.status = ProvisioningJobStatus.EXHAUSTED.value
            job.finished_at = datetime.utcnow()
            error = "Deadline reached" if result.deadline_reached else "Account not discoverable yet"
            job.error_message = error
            integrations = WhatsAppIntegrationRepository(session)
            integration = await integrations.get_by_tenant(tenant_id)
            if integration is not None:
                integration.connection_status = ConnectionStatus.AWAITING_WABA_CREATION.value
            await audit.log_step(
                tenant_id,
                "provisioning_poll",
                success=False,
                error_message=error,
                details={"attempts_used": result.attempts_used},
            )
            await session.commit()

    def is_live(self, job: ProvisioningJob) -> bool:
        """A running row counts only while this process still drives its task."""
        if job.is_finished:
            return False
        task = self._tasks.get(job.id)
        if task is None or task.done():
            return False
        return job.deadline_at is None or job.deadline_at > datetime.utcnow()

    async def mark_stale(self, session: AsyncSession, job: ProvisioningJob) -> None:
        """Close out a running row left behind by a restart or a missed deadline. Flushes."""
        task = self._tasks.get(job.id)
        if task is not None and not task.done():
            task.cancel()
        job.status = ProvisioningJobStatus.FAILED.value
        job.error_message = "Job interrupted before completion"
        job.finished_at = datetime.utcnow()
        await session.flush()
        logger.warning("Closed stale provisioning job", extra={"job_id": job.id})

    async def cancel(self, session: AsyncSession, tenant_id: int) -> ProvisioningJob | None:
        """Cancel the tenant's running job, if any. Commits."""
        job = await ProvisioningJobRepository(session).get_latest(tenant_id)
        if job is None or job.is_finished:
            return job
        task = self._tasks.get(job.id)
        if task is not None and not task.done():
            task.cancel()
        job.status = ProvisioningJobStatus.CANCELLED.value
        job.finished_at = datetime.utcnow()
        await session.commit()
        return job

    async def wait(self, job_id: int) -> None:
        """Wait for a job's task to finish (no-op when not running)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)


provisioning_runner = ProvisioningJobRunner()
