"""Audit logging of onboarding pipeline steps."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from waconnect.persistence.models.integration_log import IntegrationLog

logger = logging.getLogger(__name__)


class IntegrationAuditService:
    """Appends one IntegrationLog entry per attempted step.

    Usage:
        audit = IntegrationAuditService(session)
        await audit.log_step(tenant_id, "waba_discovery", success=True, strategy="me_waba")

    Entries join the caller's unit of work inside a savepoint. A failing
    write is logged and discarded, and the caller's pending work still
    commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_step(
        self,
        tenant_id: int,
        step: str,
        success: bool,
        strategy: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a step attempt.

        Args:
            tenant_id: Tenant the step ran for
            step: Pipeline step name (e.g. "token_exchange", "waba_creation")
            success: Whether the step succeeded
            strategy: Strategy name for multi-strategy steps
            error_message: Failure reason when success is False
            details: Structured, non-secret context
        """
        entry = IntegrationLog(
            tenant_id=tenant_id,
            step=step,
            strategy=strategy,
            success=success,
            error_message=error_message,
            details=details or {},
        )
        logger.info(
            "Integration step",
            extra={"step": step, "strategy": strategy, "success": success, "step_error": error_message},
        )
        try:
            # Savepoint: a failed insert rolls back only the log entry
            async with self.session.begin_nested():
                self.session.add(entry)
                await self.session.flush()
        except Exception as e:
            logger.error(f"Failed to write integration log: {e}")
            if entry in self.session:
                self.session.expunge(entry)
