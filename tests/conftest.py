"""Shared fixtures: a throwaway SQLite database and fake collaborators."""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from restocked.db.models import (
    Base,
    NotificationSettings,
    Product,
    StockStatus,
    TrackedItem,
    User,
    Variant,
)
from restocked.ingest.extractor import ExtractedVariant, ExtractionResult
from restocked.notify.service import NotificationService
from restocked.worker.lease_lock import SqlLeaseLockManager


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def lock_manager(session_factory):
    return SqlLeaseLockManager(session_factory)


@pytest.fixture
def notifier():
    return NotificationService(
        neutral_stock_change_policy="ignore",
        default_price_drop_threshold=0,
        default_price_increase_threshold=0,
    )


def variant(key: str, price: Optional[str], status: StockStatus = StockStatus.IN_STOCK) -> ExtractedVariant:
    return ExtractedVariant(
        variant_key=key,
        price=Decimal(price) if price is not None else None,
        stock_status=status,
        currency="USD",
    )


class FakeExtractor:
    """
    Returns canned results per URL.

    A value may be an ExtractionResult, an exception instance (raised), or
    missing (empty result). ``gate`` makes every call wait on an event.
    """

    def __init__(self, results: Optional[dict] = None, gate: Optional[asyncio.Event] = None, delay: float = 0):
        self.results = results or {}
        self.gate = gate
        self.delay = delay
        self.calls: list[str] = []

    async def extract(self, url: str) -> ExtractionResult:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.get(url, ExtractionResult())
        if isinstance(result, Exception):
            raise result
        return result


class FakeGateway:
    """Records sends; ``fail_for`` addresses get False, ``raise_for`` addresses raise."""

    def __init__(self, fail_for: Optional[set] = None, raise_for: Optional[set] = None):
        self.fail_for = fail_for or set()
        self.raise_for = raise_for or set()
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> bool:
        if to in self.raise_for:
            raise ConnectionError("smtp down")
        if to in self.fail_for:
            return False
        self.sent.append((to, subject, body))
        return True

    async def close(self):
        pass


async def create_user(db: AsyncSession, email: Optional[str] = "user@example.com", **settings) -> User:
    user = User(email=email, created_at=datetime.utcnow())
    db.add(user)
    await db.flush()
    if settings:
        db.add(NotificationSettings(user_id=user.id, **settings))
    await db.commit()
    return user


async def create_product(
    db: AsyncSession,
    url: str = "https://shop.example.com/p/1",
    name: str = "Trail Runner",
    last_checked_at: Optional[datetime] = None,
) -> Product:
    product = Product(url=url, name=name, created_at=datetime.utcnow(), last_checked_at=last_checked_at)
    db.add(product)
    await db.commit()
    return product


async def create_variant(
    db: AsyncSession,
    product: Product,
    key: str = "size-42",
    price: Optional[str] = "100.00",
    status: StockStatus = StockStatus.IN_STOCK,
    last_modified_at: Optional[datetime] = None,
) -> Variant:
    now = datetime.utcnow()
    row = Variant(
        product_id=product.id,
        variant_key=key,
        current_price=Decimal(price) if price is not None else None,
        currency="USD",
        current_stock_status=status.value,
        last_modified_at=last_modified_at or now,
        created_at=now,
    )
    db.add(row)
    await db.commit()
    return row


async def track(
    db: AsyncSession,
    user: User,
    product: Product,
    variant_row: Optional[Variant] = None,
    notifications_enabled: bool = True,
) -> TrackedItem:
    item = TrackedItem(
        user_id=user.id,
        product_id=product.id,
        variant_id=variant_row.id if variant_row else None,
        notifications_enabled=notifications_enabled,
        created_at=datetime.utcnow(),
    )
    db.add(item)
    await db.commit()
    return item
