"""Turns change events into per-user notification rows."""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from restocked.config import settings
from restocked.db.models import (
    DeliveryStatus,
    Notification,
    NotificationSettings,
    NotificationType,
    Product,
    StockStatus,
    TrackedItem,
    Variant,
)
from restocked.detect.changes import ChangeEvent, ChangeKind, PriceDelta, StockTransition
from restocked.notify.formatters import format_change_message
from restocked import metrics

logger = logging.getLogger(__name__)


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class NotificationService:
    """
    Creates Notification rows for a change event.

    Works inside the caller's session and never commits, so the rows land
    in the same transaction as the variant/history writes that produced
    the event.
    """

    def __init__(
        self,
        neutral_stock_change_policy: Optional[str] = None,
        default_price_drop_threshold: Optional[float] = None,
        default_price_increase_threshold: Optional[float] = None,
    ):
        self.neutral_stock_change_policy = (
            neutral_stock_change_policy or settings.neutral_stock_change_policy
        )
        self.default_price_drop_threshold = _to_decimal(
            default_price_drop_threshold
            if default_price_drop_threshold is not None
            else settings.default_price_drop_threshold_percent
        )
        self.default_price_increase_threshold = _to_decimal(
            default_price_increase_threshold
            if default_price_increase_threshold is not None
            else settings.default_price_increase_threshold_percent
        )

    def notification_type_for(self, event: ChangeEvent) -> Optional[NotificationType]:
        """Map a change kind to the notification it implies, if any."""
        kind = event.kind
        if kind == ChangeKind.PRICE_DROP:
            return NotificationType.PRICE_DROP
        if kind == ChangeKind.PRICE_INCREASE:
            return NotificationType.PRICE_INCREASE
        if kind == ChangeKind.RESTOCK:
            return NotificationType.RESTOCK
        if kind == ChangeKind.OUT_OF_STOCK:
            return NotificationType.OUT_OF_STOCK
        if kind == ChangeKind.STOCK_CHANGED:
            if self.neutral_stock_change_policy != "elevate":
                return None
            detail = event.detail
            if not isinstance(detail, StockTransition):
                raise TypeError(
                    f"STOCK_CHANGED event carries {type(detail).__name__}, expected StockTransition"
                )
            if detail.new_status == StockStatus.IN_STOCK:
                return NotificationType.RESTOCK
            if detail.new_status == StockStatus.OUT_OF_STOCK:
                return NotificationType.OUT_OF_STOCK
            return None
        raise ValueError(f"Unhandled change kind: {kind!r}")

    async def get_subscribers(
        self, db: AsyncSession, product_id: int, variant_id: int
    ) -> list[TrackedItem]:
        """Tracked items for this variant, or for the whole product, with notifications on."""
        result = await db.execute(
            select(TrackedItem)
            .where(
                TrackedItem.product_id == product_id,
                or_(TrackedItem.variant_id == variant_id, TrackedItem.variant_id.is_(None)),
                TrackedItem.notifications_enabled.is_(True),
            )
            .order_by(TrackedItem.id)
        )
        return list(result.scalars().all())

    async def get_settings(self, db: AsyncSession, user_id: int) -> NotificationSettings:
        """User settings, or an unsaved all-defaults instance when the user has none."""
        user_settings = await db.get(NotificationSettings, user_id)
        if user_settings is None:
            user_settings = NotificationSettings(
                user_id=user_id,
                email_enabled=True,
                price_drop_threshold_percent=None,
                price_increase_threshold_percent=None,
                notify_price_drop=True,
                notify_price_increase=True,
                notify_restock=True,
                notify_out_of_stock=True,
            )
        return user_settings

    def passes_filter(
        self,
        user_settings: NotificationSettings,
        notification_type: NotificationType,
        event: ChangeEvent,
    ) -> bool:
        """Apply the per-type toggle and the price thresholds."""
        if notification_type == NotificationType.RESTOCK:
            return user_settings.notify_restock
        if notification_type == NotificationType.OUT_OF_STOCK:
            return user_settings.notify_out_of_stock

        detail = event.detail
        if not isinstance(detail, PriceDelta):
            raise TypeError(f"{notification_type.value} needs a PriceDelta, got {type(detail).__name__}")
        percent = detail.percent_change

        if notification_type == NotificationType.PRICE_DROP:
            if not user_settings.notify_price_drop:
                return False
            threshold = user_settings.price_drop_threshold_percent
            threshold = _to_decimal(threshold) if threshold is not None else self.default_price_drop_threshold
            if percent is None:
                return threshold <= 0
            return -percent >= threshold

        if notification_type == NotificationType.PRICE_INCREASE:
            if not user_settings.notify_price_increase:
                return False
            threshold = user_settings.price_increase_threshold_percent
            threshold = (
                _to_decimal(threshold) if threshold is not None else self.default_price_increase_threshold
            )
            # Increase from zero is unbounded
            if percent is None:
                return True
            return percent >= threshold

        raise ValueError(f"Unhandled notification type: {notification_type!r}")

    async def already_notified(
        self,
        db: AsyncSession,
        user_id: int,
        variant_id: int,
        notification_type: NotificationType,
        change_key: str,
    ) -> bool:
        result = await db.execute(
            select(Notification.id).where(
                Notification.user_id == user_id,
                Notification.variant_id == variant_id,
                Notification.type == notification_type.value,
                Notification.change_key == change_key,
            )
        )
        return result.first() is not None

    def build_payload(
        self,
        event: ChangeEvent,
        notification_type: NotificationType,
        product: Product,
        variant: Variant,
    ) -> dict:
        product_name = product.name or "Product"
        payload = {
            "change_kind": event.kind.value,
            "product_name": product_name,
            "product_url": product.url,
            "variant_key": variant.variant_key,
            "currency": variant.currency,
            "message": format_change_message(
                product_name, notification_type, event, variant.currency
            ),
        }
        detail = event.detail
        if isinstance(detail, PriceDelta):
            percent = detail.percent_change
            payload.update(
                old_price=str(detail.old_price),
                new_price=str(detail.new_price),
                percent_change=f"{percent:.2f}" if percent is not None else None,
            )
        else:
            payload.update(
                old_status=detail.old_status.value,
                new_status=detail.new_status.value,
            )
        return payload

    async def notify(
        self,
        db: AsyncSession,
        event: ChangeEvent,
        product: Product,
        variant: Variant,
        subscribers: Optional[list[TrackedItem]] = None,
    ) -> list[Notification]:
        """
        Create notifications for every subscriber that passes its filters.

        Idempotent: re-delivering the same event creates nothing new.

        Args:
            db: Session owned by the caller (not committed here)
            event: Detected change
            product: Product the variant belongs to
            variant: Variant the event is about
            subscribers: Pre-loaded tracked items; loaded when omitted

        Returns:
            Notifications added to the session
        """
        notification_type = self.notification_type_for(event)
        if notification_type is None:
            logger.debug(
                f"Change {event.kind.value} on variant {event.variant_id} has no notification"
            )
            return []

        if subscribers is None:
            subscribers = await self.get_subscribers(db, event.product_id, event.variant_id)

        change_key = event.change_key
        created: list[Notification] = []
        seen_users: set[int] = set()

        for item in subscribers:
            # Product-level and variant-level subscriptions for the same user
            if item.user_id in seen_users:
                continue
            seen_users.add(item.user_id)

            user_settings = await self.get_settings(db, item.user_id)
            if not self.passes_filter(user_settings, notification_type, event):
                logger.debug(
                    f"User {item.user_id} filtered out {notification_type.value} "
                    f"for variant {event.variant_id}"
                )
                continue

            if await self.already_notified(
                db, item.user_id, event.variant_id, notification_type, change_key
            ):
                logger.info(
                    f"Skipping duplicate {notification_type.value} for user {item.user_id}, "
                    f"variant {event.variant_id} ({change_key})"
                )
                metrics.record_notification_deduplicated(notification_type.value)
                continue

            notification = Notification(
                user_id=item.user_id,
                product_id=event.product_id,
                variant_id=event.variant_id,
                type=notification_type.value,
                payload=self.build_payload(event, notification_type, product, variant),
                change_key=change_key,
                delivery_status=DeliveryStatus.PENDING.value,
                delivery_attempts=0,
            )
            db.add(notification)
            created.append(notification)
            metrics.record_notification_created(notification_type.value)
            logger.info(
                f"Created {notification_type.value} notification for user {item.user_id}, "
                f"product {event.product_id}, variant {event.variant_id}"
            )

        if created:
            await db.flush()
        return created


notification_service = NotificationService()
