"""Process-wide wiring of the check and email cycles."""

import logging

from restocked.config import settings
from restocked.db.models import CheckRun
from restocked.db.session import AsyncSessionLocal
from restocked.ingest.extractor import HttpExtractor
from restocked.notify.email import build_email_gateway
from restocked.notify.service import notification_service
from restocked.worker.check_scheduler import CheckScheduler
from restocked.worker.email_delivery import EmailDeliveryScheduler, EmailDeliverySummary
from restocked.worker.lease_lock import LeaseLockManager, build_lock_manager

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Owns the long-lived collaborators (lock backend, extractor client,
    email gateway) and exposes the entrypoints APScheduler and the
    operator API call.
    """

    def __init__(self):
        self.lock_manager: LeaseLockManager | None = None
        self.extractor: HttpExtractor | None = None
        self.gateway = None
        self.check_scheduler: CheckScheduler | None = None
        self.email_scheduler: EmailDeliveryScheduler | None = None

    async def initialize(self):
        """Build collaborators from settings."""
        self.lock_manager = build_lock_manager(AsyncSessionLocal)
        self.extractor = HttpExtractor()
        self.gateway = build_email_gateway()
        self.check_scheduler = CheckScheduler(
            session_factory=AsyncSessionLocal,
            lock_manager=self.lock_manager,
            extractor=self.extractor,
            notification_service=notification_service,
        )
        self.email_scheduler = EmailDeliveryScheduler(
            session_factory=AsyncSessionLocal,
            lock_manager=self.lock_manager,
            gateway=self.gateway,
        )
        logger.info(f"Task runner initialized (lock backend: {settings.lock_backend})")

    async def close(self):
        """Clean up resources."""
        if self.extractor:
            await self.extractor.close()
        if self.gateway is not None:
            await self.gateway.close()
        if self.lock_manager:
            await self.lock_manager.close()

    async def _ensure_initialized(self):
        if self.check_scheduler is None:
            await self.initialize()

    async def run_checks(self, trigger: str = "scheduled") -> CheckRun:
        await self._ensure_initialized()
        return await self.check_scheduler.run_cycle(trigger=trigger)

    async def run_scheduled_checks(self):
        """APScheduler entrypoint for the check cycle."""
        await self.run_checks(trigger="scheduled")

    async def deliver_emails(self) -> EmailDeliverySummary:
        """APScheduler and operator entrypoint for the email cycle."""
        await self._ensure_initialized()
        return await self.email_scheduler.run_cycle()


task_runner = TaskRunner()
