"""Check cycle: lock, select due products, fan out to workers, record the run."""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restocked.config import settings
from restocked.db.models import CheckRun, CheckRunStatus, Product, TrackedItem
from restocked.ingest.extractor import Extractor
from restocked.notify.service import NotificationService
from restocked.worker.check_worker import CheckWorker, ProductCheckResult
from restocked.worker.lease_lock import (
    CHECK_SCHEDULER_LOCK,
    LeaseLockManager,
    refresh_lock_heartbeat,
)
from restocked import metrics

logger = logging.getLogger(__name__)

SKIP_REASON_LOCK_HELD = "lock held"


class SchedulerState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    RUNNING = "running"
    FINALIZING = "finalizing"


class CheckScheduler:
    """
    Runs check cycles.

    Scheduled and manual triggers share ``run_cycle``; the leased lock
    guarantees at most one cycle runs at a time across all processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LeaseLockManager,
        extractor: Extractor,
        notification_service: Optional[NotificationService] = None,
        min_check_interval_minutes: Optional[int] = None,
        max_products_per_run: Optional[int] = None,
        concurrency: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        heartbeat_interval: Optional[int] = None,
        worker: Optional[CheckWorker] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.min_check_interval_minutes = (
            min_check_interval_minutes
            if min_check_interval_minutes is not None
            else settings.min_check_interval_minutes
        )
        self.max_products_per_run = (
            max_products_per_run if max_products_per_run is not None else settings.max_products_per_run
        )
        self.concurrency = max(1, concurrency if concurrency is not None else settings.check_concurrency)
        self.lease_seconds = lease_seconds or settings.check_lock_lease_seconds
        self.heartbeat_interval = heartbeat_interval or settings.lock_heartbeat_interval_seconds
        self.worker = worker or CheckWorker(
            extractor=extractor,
            session_factory=session_factory,
            notification_service=notification_service,
        )
        self.state = SchedulerState.IDLE

    async def run_now(self) -> CheckRun:
        """Operator trigger; same path and lock as the scheduled job."""
        return await self.run_cycle(trigger="manual")

    async def run_cycle(self, trigger: str = "scheduled") -> CheckRun:
        """
        Run one check cycle.

        Args:
            trigger: "scheduled" | "manual"

        Returns:
            The persisted CheckRun (status ran, skipped or failed)
        """
        run_id = uuid4().hex
        started = time.monotonic()

        # Store failures here propagate: nothing is held yet
        token = await self.lock_manager.acquire(
            CHECK_SCHEDULER_LOCK, self.lease_seconds, holder=run_id
        )

        if not token:
            lock_info = await self.lock_manager.get_lock_info(CHECK_SCHEDULER_LOCK)
            logger.info(
                f"Check cycle already running; skipping {trigger} run "
                f"(holder: {str((lock_info or {}).get('holder'))[:16]}, "
                f"ttl_s: {(lock_info or {}).get('ttl_seconds')})",
                extra={"run_id": run_id},
            )
            metrics.record_lock_skip(CHECK_SCHEDULER_LOCK)
            metrics.record_check_run(trigger, CheckRunStatus.SKIPPED.value)
            return await self._record_skip(run_id, trigger)

        heartbeat_task: Optional[asyncio.Task] = None
        check_run: Optional[CheckRun] = None

        try:
            check_run = await self._create_run(run_id, trigger)

            heartbeat_task = asyncio.create_task(
                refresh_lock_heartbeat(
                    self.lock_manager,
                    CHECK_SCHEDULER_LOCK,
                    token,
                    interval=self.heartbeat_interval,
                    lease_seconds=self.lease_seconds,
                )
            )

            self.state = SchedulerState.SELECTING
            due = await self.count_due_products()
            products = await self.select_due_products()
            deferred = max(0, due - len(products))
            logger.info(
                f"Check run {run_id[:16]}: {len(products)} of {due} due products selected ({trigger})",
                extra={"run_id": run_id},
            )

            self.state = SchedulerState.RUNNING
            results = await self._check_all(products)

            self.state = SchedulerState.FINALIZING
            check_run = await self._finalize(check_run.id, len(products), deferred, results, started)
            metrics.record_check_run(trigger, CheckRunStatus.RAN.value, time.monotonic() - started)
            logger.info(
                f"Check run {run_id[:16]} finished: {check_run.products_checked} checked, "
                f"{check_run.products_failed} failed, {check_run.products_skipped} deferred, "
                f"{check_run.changes_detected} changes, "
                f"{check_run.notifications_created} notifications ({check_run.duration_ms}ms)",
                extra={"run_id": run_id},
            )
            return check_run

        except Exception as e:
            logger.error(f"Check run {run_id[:16]} failed: {e}", exc_info=True, extra={"run_id": run_id})
            metrics.record_check_run(trigger, CheckRunStatus.FAILED.value, time.monotonic() - started)
            if check_run is not None:
                await self._mark_failed(check_run.id, str(e), started)
            raise

        finally:
            if heartbeat_task:
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass

            try:
                await self.lock_manager.release(CHECK_SCHEDULER_LOCK, token)
            except Exception as e:
                logger.error(f"Failed to release check lock for run {run_id[:16]}: {e}")

            self.state = SchedulerState.IDLE

    def _due_conditions(self) -> tuple:
        cutoff = datetime.utcnow() - timedelta(minutes=self.min_check_interval_minutes)
        return (
            exists().where(TrackedItem.product_id == Product.id),
            (Product.last_checked_at.is_(None)) | (Product.last_checked_at < cutoff),
        )

    async def count_due_products(self) -> int:
        """Number of due products before the per-run cap is applied."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(Product).where(*self._due_conditions())
            )
            return result.scalar_one()

    async def select_due_products(self) -> list[tuple[int, str]]:
        """
        Products with at least one tracked item that are due for a check.

        Never-checked products come first, then the least recently checked.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Product.id, Product.url)
                .where(*self._due_conditions())
                .order_by(Product.last_checked_at.is_(None).desc(), Product.last_checked_at.asc(), Product.id)
                .limit(self.max_products_per_run)
            )
            return [(row.id, row.url) for row in result.all()]

    async def _check_all(self, products: list[tuple[int, str]]) -> list[ProductCheckResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def check_one(product_id: int, url: str) -> ProductCheckResult:
            async with semaphore:
                return await self.worker.check_product(product_id, url)

        gathered = await asyncio.gather(
            *(check_one(product_id, url) for product_id, url in products),
            return_exceptions=True,
        )

        results: list[ProductCheckResult] = []
        for (product_id, url), outcome in zip(products, gathered):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Worker crashed for product {product_id}: {outcome}")
                results.append(
                    ProductCheckResult(
                        product_id=product_id,
                        url=url,
                        outcome="failed",
                        error=f"{type(outcome).__name__}: {outcome}",
                    )
                )
            else:
                results.append(outcome)
        return results

    async def _record_skip(self, run_id: str, trigger: str) -> CheckRun:
        now = datetime.utcnow()
        async with self.session_factory() as db:
            check_run = CheckRun(
                run_id=run_id,
                trigger=trigger,
                status=CheckRunStatus.SKIPPED.value,
                skip_reason=SKIP_REASON_LOCK_HELD,
                started_at=now,
                finished_at=now,
                duration_ms=0,
                errors=[],
            )
            db.add(check_run)
            await db.commit()
            await db.refresh(check_run)
            return check_run

    async def _create_run(self, run_id: str, trigger: str) -> CheckRun:
        async with self.session_factory() as db:
            check_run = CheckRun(
                run_id=run_id,
                trigger=trigger,
                status=CheckRunStatus.RUNNING.value,
                started_at=datetime.utcnow(),
                errors=[],
            )
            db.add(check_run)
            await db.commit()
            await db.refresh(check_run)
            logger.info(f"Created CheckRun {check_run.id} for run_id: {run_id[:16]}...")
            return check_run

    async def _finalize(
        self,
        check_run_id: int,
        selected: int,
        deferred: int,
        results: list[ProductCheckResult],
        started: float,
    ) -> CheckRun:
        """Store the run's counts. ``products_skipped`` is due products left for a later run by the cap."""
        failed = [r for r in results if r.failed]
        checked = len(results) - len(failed)

        async with self.session_factory() as db:
            check_run = await db.get(CheckRun, check_run_id)
            check_run.status = CheckRunStatus.RAN.value
            check_run.finished_at = datetime.utcnow()
            check_run.duration_ms = int((time.monotonic() - started) * 1000)
            check_run.products_selected = selected
            check_run.products_checked = checked
            check_run.products_failed = len(failed)
            check_run.products_skipped = deferred
            check_run.changes_detected = sum(len(r.changes) for r in results)
            check_run.notifications_created = sum(r.notifications_created for r in results)
            check_run.errors = [
                {"product_id": r.product_id, "url": r.url, "error": r.error} for r in failed
            ]
            await db.commit()
            await db.refresh(check_run)
            return check_run

    async def _mark_failed(self, check_run_id: int, error: str, started: float) -> None:
        try:
            async with self.session_factory() as db:
                check_run = await db.get(CheckRun, check_run_id)
                if check_run is None:
                    return
                check_run.status = CheckRunStatus.FAILED.value
                check_run.finished_at = datetime.utcnow()
                check_run.duration_ms = int((time.monotonic() - started) * 1000)
                check_run.error_message = error[:2000]
                await db.commit()
        except Exception as e:
            logger.error(f"Could not mark CheckRun {check_run_id} failed: {e}")
