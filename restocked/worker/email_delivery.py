"""Email delivery cycle: send pending notifications, retry failures with backoff."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restocked.config import settings
from restocked.db.models import DeliveryStatus, Notification, NotificationSettings, Product, User
from restocked.notify.email import EmailGateway, LoggingEmailGateway
from restocked.notify.formatters import email_body, email_subject
from restocked.worker.lease_lock import (
    EMAIL_DELIVERY_LOCK,
    LeaseLockManager,
    refresh_lock_heartbeat,
)
from restocked import metrics

logger = logging.getLogger(__name__)


@dataclass
class EmailDeliverySummary:
    run_id: str
    skipped: bool = False
    skip_reason: Optional[str] = None
    selected: int = 0
    sent: int = 0
    suppressed: int = 0  # user has email turned off
    failed: int = 0
    permanently_failed: int = 0
    errors: list[dict] = field(default_factory=list)


def retry_delay(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff after ``attempts`` failed tries (1 -> base, 2 -> 2*base, ...)."""
    exponent = max(0, attempts - 1)
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))


class EmailDeliveryScheduler:
    """
    Delivers notification emails asynchronously from the check cycle.

    Delivery is at-least-once: a crash between the provider accepting a
    message and the row being marked SENT leads to a resend on the next
    cycle.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LeaseLockManager,
        gateway: Optional[EmailGateway] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[int] = None,
        backoff_max_seconds: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        heartbeat_interval: Optional[int] = None,
        frontend_url: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.gateway = gateway or LoggingEmailGateway()
        self.batch_size = batch_size or settings.email_batch_size
        self.max_attempts = max_attempts or settings.max_delivery_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.email_retry_backoff_seconds
        )
        self.backoff_max_seconds = (
            backoff_max_seconds
            if backoff_max_seconds is not None
            else settings.email_retry_backoff_max_seconds
        )
        self.lease_seconds = lease_seconds or settings.email_lock_lease_seconds
        self.heartbeat_interval = heartbeat_interval or settings.lock_heartbeat_interval_seconds
        self.frontend_url = frontend_url or settings.frontend_url

    async def run_cycle(self) -> EmailDeliverySummary:
        run_id = uuid4().hex
        summary = EmailDeliverySummary(run_id=run_id)

        token = await self.lock_manager.acquire(
            EMAIL_DELIVERY_LOCK, self.lease_seconds, holder=run_id
        )
        if not token:
            logger.info("Email delivery already running; skipping cycle", extra={"run_id": run_id})
            metrics.record_lock_skip(EMAIL_DELIVERY_LOCK)
            summary.skipped = True
            summary.skip_reason = "lock held"
            return summary

        heartbeat_task = asyncio.create_task(
            refresh_lock_heartbeat(
                self.lock_manager,
                EMAIL_DELIVERY_LOCK,
                token,
                interval=self.heartbeat_interval,
                lease_seconds=self.lease_seconds,
            )
        )

        try:
            notification_ids = await self.select_due()
            summary.selected = len(notification_ids)

            for notification_id in notification_ids:
                try:
                    await self._deliver(notification_id, summary)
                except Exception as e:
                    logger.error(
                        f"Delivery of notification {notification_id} raised: {e}",
                        exc_info=True,
                        extra={"run_id": run_id, "notification_id": notification_id},
                    )
                    await self._record_failed_attempt(
                        notification_id, f"{type(e).__name__}: {e}", summary
                    )

            if summary.selected:
                logger.info(
                    f"Email cycle {run_id[:16]}: {summary.sent} sent, {summary.suppressed} suppressed, "
                    f"{summary.failed} failed ({summary.permanently_failed} permanently)",
                    extra={"run_id": run_id},
                )
            return summary

        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

            try:
                await self.lock_manager.release(EMAIL_DELIVERY_LOCK, token)
            except Exception as e:
                logger.error(f"Failed to release email lock: {e}")

    async def select_due(self) -> list[int]:
        """Ids of PENDING/FAILED notifications with attempts left and no backoff pending."""
        now = datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification.id)
                .where(
                    Notification.delivery_status.in_(
                        [DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value]
                    ),
                    Notification.delivery_attempts < self.max_attempts,
                    (Notification.next_attempt_at.is_(None)) | (Notification.next_attempt_at <= now),
                )
                .order_by(Notification.created_at.asc(), Notification.id.asc())
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _deliver(self, notification_id: int, summary: EmailDeliverySummary) -> None:
        async with self.session_factory() as db:
            notification = await db.get(Notification, notification_id)
            if notification is None or notification.delivery_status == DeliveryStatus.SENT.value:
                return

            user = await db.get(User, notification.user_id)
            user_settings = await db.get(NotificationSettings, notification.user_id)
            now = datetime.utcnow()

            if user_settings is not None and not user_settings.email_enabled:
                notification.delivery_status = DeliveryStatus.SENT.value
                notification.sent_at = now
                await db.commit()
                summary.suppressed += 1
                metrics.record_email_delivery("suppressed")
                logger.debug(
                    f"Email disabled for user {notification.user_id}; notification {notification_id} closed",
                    extra={"run_id": summary.run_id, "notification_id": notification_id},
                )
                return

            error: Optional[str] = None
            if user is None or not user.email:
                error = "Recipient has no email address"
            else:
                product = await db.get(Product, notification.product_id)
                payload = notification.payload or {}
                product_name = payload.get("product_name") or (product.name if product else None) or "Product"
                product_url = payload.get("product_url") or (product.url if product else "")
                try:
                    subject = email_subject(notification.type, product_name)
                    body = email_body(notification.type, payload, product_name, product_url, self.frontend_url)
                    if not await self.gateway.send(user.email, subject, body):
                        error = "Email gateway rejected the message"
                except Exception as e:
                    error = f"{type(e).__name__}: {e}"

            if error is None:
                notification.delivery_status = DeliveryStatus.SENT.value
                notification.sent_at = now
                notification.last_attempt_at = now
                notification.last_error = None
                await db.commit()
                summary.sent += 1
                metrics.record_email_delivery("sent")
                return

            exhausted = self._apply_failure(notification, error, now)
            await db.commit()

        self._count_failure(notification_id, error, exhausted, summary)

    async def _record_failed_attempt(
        self, notification_id: int, error: str, summary: EmailDeliverySummary
    ) -> None:
        """Charge an attempt for a notification whose delivery raised, in a fresh session."""
        try:
            async with self.session_factory() as db:
                notification = await db.get(Notification, notification_id)
                if notification is None or notification.delivery_status == DeliveryStatus.SENT.value:
                    return
                exhausted = self._apply_failure(notification, error, datetime.utcnow())
                await db.commit()
        except Exception as e:
            logger.error(
                f"Could not record failed attempt for notification {notification_id}: {e}",
                extra={"run_id": summary.run_id, "notification_id": notification_id},
            )
            summary.failed += 1
            summary.errors.append({"notification_id": notification_id, "error": error})
            metrics.record_email_delivery("failed")
            return

        self._count_failure(notification_id, error, exhausted, summary)

    def _apply_failure(self, notification: Notification, error: str, now: datetime) -> bool:
        """Bump attempts and schedule the retry. Returns True once attempts are used up."""
        notification.delivery_attempts += 1
        notification.last_attempt_at = now
        notification.last_error = error[:1000]
        notification.delivery_status = DeliveryStatus.FAILED.value
        exhausted = notification.delivery_attempts >= self.max_attempts
        if exhausted:
            notification.next_attempt_at = None
        else:
            notification.next_attempt_at = now + retry_delay(
                notification.delivery_attempts, self.backoff_seconds, self.backoff_max_seconds
            )
        return exhausted

    def _count_failure(
        self, notification_id: int, error: str, exhausted: bool, summary: EmailDeliverySummary
    ) -> None:
        context = {"run_id": summary.run_id, "notification_id": notification_id}
        summary.failed += 1
        summary.errors.append({"notification_id": notification_id, "error": error})
        if exhausted:
            summary.permanently_failed += 1
            metrics.record_email_delivery("exhausted")
            logger.error(
                f"Notification {notification_id} permanently failed after "
                f"{self.max_attempts} attempts: {error}",
                extra=context,
            )
        else:
            metrics.record_email_delivery("failed")
            logger.warning(f"Email for notification {notification_id} failed: {error}", extra=context)
