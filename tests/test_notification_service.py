"""Tests for notification creation, filtering and deduplication."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from restocked.db.models import DeliveryStatus, Notification, NotificationType, StockStatus
from restocked.detect.changes import ChangeEvent, ChangeKind, StockTransition, VariantState, detect_changes
from restocked.notify.service import NotificationService

from conftest import create_product, create_user, create_variant, track

SINCE = datetime(2026, 1, 1, 9, 30)


def _event(variant_row, old_price, new_price, old_status=StockStatus.IN_STOCK, new_status=StockStatus.IN_STOCK):
    events = detect_changes(
        VariantState(Decimal(old_price), old_status),
        VariantState(Decimal(new_price), new_status),
        product_id=variant_row.product_id,
        variant_id=variant_row.id,
        since=SINCE,
    )
    assert len(events) == 1
    return events[0]


async def _notifications(db):
    result = await db.execute(select(Notification).order_by(Notification.id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_price_drop_creates_one_notification(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product, price="90.00")
    await track(db_session, user, product)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)
    await db_session.commit()

    assert len(created) == 1
    [notification] = await _notifications(db_session)
    assert notification.type == NotificationType.PRICE_DROP.value
    assert notification.delivery_status == DeliveryStatus.PENDING.value
    assert notification.user_id == user.id
    assert notification.variant_id == row.id
    assert notification.payload["old_price"] == "100.00"
    assert notification.payload["new_price"] == "90.00"
    assert notification.payload["percent_change"] == "-10.00"
    assert notification.payload["product_url"] == product.url
    assert "dropped" in notification.payload["message"]


@pytest.mark.asyncio
async def test_drop_below_user_threshold_is_filtered(db_session, notifier):
    user = await create_user(db_session, price_drop_threshold_percent=Decimal("20"))
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)

    assert created == []
    assert await _notifications(db_session) == []


@pytest.mark.asyncio
async def test_drop_at_threshold_passes(db_session, notifier):
    user = await create_user(db_session, price_drop_threshold_percent=Decimal("10"))
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)
    assert len(created) == 1


@pytest.mark.asyncio
async def test_configured_default_threshold_applies_without_settings(db_session):
    service = NotificationService(default_price_drop_threshold=15)
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    assert await service.notify(db_session, _event(row, "100.00", "90.00"), product, row) == []
    assert len(await service.notify(db_session, _event(row, "100.00", "80.00"), product, row)) == 1


@pytest.mark.asyncio
async def test_same_event_twice_is_deduplicated(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)
    event = _event(row, "100.00", "90.00")

    await notifier.notify(db_session, event, product, row)
    await db_session.commit()
    second = await notifier.notify(db_session, event, product, row)
    await db_session.commit()

    assert second == []
    count = await db_session.scalar(select(func.count()).select_from(Notification))
    assert count == 1


@pytest.mark.asyncio
async def test_product_and_variant_subscription_notify_once(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)
    await track(db_session, user, product, row)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)
    assert len(created) == 1


@pytest.mark.asyncio
async def test_other_variant_subscription_not_notified(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product, key="size-42")
    other = await create_variant(db_session, product, key="size-43")
    await track(db_session, user, product, other)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)
    assert created == []


@pytest.mark.asyncio
async def test_disabled_tracked_item_not_notified(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product, notifications_enabled=False)

    assert await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row) == []


@pytest.mark.asyncio
async def test_type_toggle_filters(db_session, notifier):
    user = await create_user(db_session, notify_restock=False)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    event = _event(row, "10.00", "10.00", StockStatus.OUT_OF_STOCK, StockStatus.IN_STOCK)
    assert await notifier.notify(db_session, event, product, row) == []


@pytest.mark.asyncio
async def test_price_increase_threshold(db_session, notifier):
    user = await create_user(db_session, price_increase_threshold_percent=Decimal("5"))
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    assert await notifier.notify(db_session, _event(row, "100.00", "104.00"), product, row) == []
    created = await notifier.notify(db_session, _event(row, "100.00", "110.00"), product, row)
    assert [n.type for n in created] == [NotificationType.PRICE_INCREASE.value]


@pytest.mark.asyncio
async def test_neutral_stock_change_ignored_by_default(db_session, notifier):
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    event = _event(row, "10.00", "10.00", StockStatus.UNKNOWN, StockStatus.IN_STOCK)
    assert await notifier.notify(db_session, event, product, row) == []


@pytest.mark.asyncio
async def test_neutral_stock_change_elevated(db_session):
    service = NotificationService(neutral_stock_change_policy="elevate")
    user = await create_user(db_session)
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    await track(db_session, user, product)

    to_in = _event(row, "10.00", "10.00", StockStatus.UNKNOWN, StockStatus.IN_STOCK)
    to_out = _event(row, "10.00", "10.00", StockStatus.UNKNOWN, StockStatus.OUT_OF_STOCK)
    to_unknown = _event(row, "10.00", "10.00", StockStatus.IN_STOCK, StockStatus.UNKNOWN)

    assert [n.type for n in await service.notify(db_session, to_in, product, row)] == ["RESTOCK"]
    assert [n.type for n in await service.notify(db_session, to_out, product, row)] == ["OUT_OF_STOCK"]
    assert await service.notify(db_session, to_unknown, product, row) == []


@pytest.mark.asyncio
async def test_each_subscriber_gets_own_notification(db_session, notifier):
    alice = await create_user(db_session, email="alice@example.com")
    bob = await create_user(db_session, email="bob@example.com", notify_price_drop=False)
    carol = await create_user(db_session, email="carol@example.com")
    product = await create_product(db_session)
    row = await create_variant(db_session, product)
    for user in (alice, bob, carol):
        await track(db_session, user, product)

    created = await notifier.notify(db_session, _event(row, "100.00", "90.00"), product, row)
    assert sorted(n.user_id for n in created) == [alice.id, carol.id]


def test_price_filter_rejects_stock_event(notifier):
    event = ChangeEvent(
        kind=ChangeKind.RESTOCK,
        product_id=1,
        variant_id=1,
        detail=StockTransition(StockStatus.OUT_OF_STOCK, StockStatus.IN_STOCK),
    )

    with pytest.raises(TypeError):
        notifier.passes_filter(None, NotificationType.PRICE_DROP, event)
