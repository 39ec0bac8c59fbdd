"""Checks a single product: extract, diff, persist, notify."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restocked.config import settings
from restocked.db.models import (
    Product,
    StockStatus,
    Variant,
    VariantPriceHistory,
    VariantStockHistory,
)
from restocked.detect.changes import ChangeEvent, VariantState, detect_changes
from restocked.ingest.extractor import (
    ExtractedVariant,
    ExtractionError,
    ExtractionResult,
    Extractor,
    cap_extraction,
)
from restocked.notify.service import NotificationService
from restocked import metrics

logger = logging.getLogger(__name__)


@dataclass
class ProductCheckResult:
    """Outcome of checking one product."""

    product_id: int
    url: str
    outcome: str  # "checked" | "failed"
    variants_seen: int = 0
    changes: list[ChangeEvent] = field(default_factory=list)
    notifications_created: int = 0
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.outcome == "failed"


class CheckWorker:
    """
    Processes one product per call.

    Extraction runs before any transaction is opened. Everything that
    follows (variant updates, history rows, notifications, last_checked_at)
    commits together or not at all.
    """

    def __init__(
        self,
        extractor: Extractor,
        session_factory: async_sessionmaker[AsyncSession],
        notification_service: Optional[NotificationService] = None,
        extraction_timeout: Optional[float] = None,
        max_variants: Optional[int] = None,
        max_payload_bytes: Optional[int] = None,
    ):
        self.extractor = extractor
        self.session_factory = session_factory
        self.notification_service = notification_service or NotificationService()
        self.extraction_timeout = (
            extraction_timeout if extraction_timeout is not None else settings.extraction_timeout_seconds
        )
        self.max_variants = max_variants
        self.max_payload_bytes = max_payload_bytes

    async def check_product(self, product_id: int, url: str) -> ProductCheckResult:
        """
        Check one product. Never raises for per-product problems; they are
        reported through the returned result.
        """
        started = time.monotonic()

        try:
            extraction = await self._extract(url)
        except Exception as e:
            duration = time.monotonic() - started
            error = self._describe_error(e)
            logger.warning(
                f"Check failed for product {product_id} ({url}): {error}",
                extra={"product_id": product_id},
            )
            metrics.record_product_check("failed", duration)
            await self._record_failure(product_id, error)
            return ProductCheckResult(
                product_id=product_id,
                url=url,
                outcome="failed",
                error=error,
                duration_ms=int(duration * 1000),
            )

        extraction_duration = time.monotonic() - started

        try:
            result = await self._apply(product_id, url, extraction)
        except Exception as e:
            logger.error(
                f"Failed to persist check for product {product_id}: {e}",
                exc_info=True,
                extra={"product_id": product_id},
            )
            metrics.record_product_check("failed", extraction_duration)
            error = f"Persist error: {e}"
            await self._record_failure(product_id, error)
            return ProductCheckResult(
                product_id=product_id,
                url=url,
                outcome="failed",
                error=error,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        result.duration_ms = int((time.monotonic() - started) * 1000)
        metrics.record_product_check("checked", extraction_duration)
        if result.changes:
            logger.info(
                f"Product {product_id}: {len(result.changes)} changes, "
                f"{result.notifications_created} notifications ({result.duration_ms}ms)"
            )
        else:
            logger.debug(f"Product {product_id}: no changes ({result.duration_ms}ms)")
        return result

    async def _extract(self, url: str) -> ExtractionResult:
        extraction = await asyncio.wait_for(
            self.extractor.extract(url), timeout=self.extraction_timeout
        )
        if extraction.error:
            raise ExtractionError(extraction.error)
        return cap_extraction(
            extraction,
            max_variants=self.max_variants,
            max_payload_bytes=self.max_payload_bytes,
            url=url,
        )

    def _describe_error(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Extraction timed out after {self.extraction_timeout:.0f}s"
        if isinstance(error, ExtractionError):
            return f"Extraction failed: {error}"
        return f"{type(error).__name__}: {error}"

    async def _record_failure(self, product_id: int, error: str) -> None:
        """Stamp the product as checked-and-failed; variant state stays as it was."""
        try:
            async with self.session_factory() as db:
                product = await db.get(Product, product_id)
                if product is None:
                    return
                product.last_checked_at = datetime.utcnow()
                product.last_check_status = "failed"
                product.last_check_error = error[:1000]
                await db.commit()
        except Exception as e:
            logger.error(f"Could not record failure for product {product_id}: {e}")

    async def _apply(
        self, product_id: int, url: str, extraction: ExtractionResult
    ) -> ProductCheckResult:
        now = datetime.utcnow()
        result = ProductCheckResult(
            product_id=product_id,
            url=url,
            outcome="checked",
            variants_seen=len(extraction.variants),
        )

        async with self.session_factory() as db:
            product = await db.get(Product, product_id)
            if product is None:
                raise LookupError(f"Product {product_id} no longer exists")

            existing = await db.execute(select(Variant).where(Variant.product_id == product_id))
            variants_by_key = {v.variant_key: v for v in existing.scalars().all()}

            for extracted in extraction.variants:
                variant = variants_by_key.get(extracted.variant_key)
                if variant is None:
                    await self._create_variant(db, product, extracted, now)
                    continue

                events = self._update_variant(db, variant, extracted, now)
                for event in events:
                    metrics.record_change(event.kind.value)
                    result.changes.append(event)
                    created = await self.notification_service.notify(db, event, product, variant)
                    result.notifications_created += len(created)

            if extraction.product_name and not product.name:
                product.name = extraction.product_name
            product.last_checked_at = now
            product.last_check_status = "success"
            product.last_check_error = None

            await db.commit()

        return result

    async def _create_variant(
        self, db: AsyncSession, product: Product, extracted: ExtractedVariant, now: datetime
    ) -> Variant:
        """First observation: store the variant and its initial history, emit nothing."""
        variant = Variant(
            product_id=product.id,
            variant_key=extracted.variant_key,
            current_price=extracted.price,
            currency=extracted.currency,
            current_stock_status=extracted.stock_status.value,
            last_modified_at=now,
            created_at=now,
        )
        db.add(variant)
        await db.flush()

        if extracted.price is not None:
            db.add(VariantPriceHistory(variant_id=variant.id, price=extracted.price, observed_at=now))
        db.add(
            VariantStockHistory(
                variant_id=variant.id, status=extracted.stock_status.value, observed_at=now
            )
        )
        logger.info(f"New variant '{extracted.variant_key}' for product {product.id}")
        return variant

    def _update_variant(
        self, db: AsyncSession, variant: Variant, extracted: ExtractedVariant, now: datetime
    ) -> list[ChangeEvent]:
        old_state = VariantState(
            price=variant.current_price,
            stock_status=StockStatus.parse(variant.current_stock_status),
        )
        new_state = VariantState(price=extracted.price, stock_status=extracted.stock_status)
        events = detect_changes(
            old_state,
            new_state,
            product_id=variant.product_id,
            variant_id=variant.id,
            since=variant.last_modified_at,
        )

        modified = False

        # A missing price is "not observed"; the stored one stays
        if extracted.price is not None and extracted.price != variant.current_price:
            variant.current_price = extracted.price
            db.add(VariantPriceHistory(variant_id=variant.id, price=extracted.price, observed_at=now))
            modified = True

        if extracted.stock_status.value != variant.current_stock_status:
            variant.current_stock_status = extracted.stock_status.value
            db.add(
                VariantStockHistory(
                    variant_id=variant.id, status=extracted.stock_status.value, observed_at=now
                )
            )
            modified = True

        if extracted.currency and extracted.currency != variant.currency:
            variant.currency = extracted.currency

        if modified:
            variant.last_modified_at = now

        return events
