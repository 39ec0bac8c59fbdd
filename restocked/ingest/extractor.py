"""Extractor capability: turns a product URL into structured variant data.

The page-parsing itself lives in a separate extraction service; this module
only defines the contract, an HTTP adapter for that service and the
defensive caps applied before anything is processed.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

import httpx

from restocked.config import settings
from restocked.db.models import StockStatus
from restocked.detect.changes import normalize_price
from restocked import metrics

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """The extractor could not produce usable data for a product."""


@dataclass
class ExtractedVariant:
    variant_key: str
    price: Optional[Decimal]
    stock_status: StockStatus
    currency: Optional[str] = None

    def approx_size(self) -> int:
        """Serialized size in bytes, used for the payload cap."""
        return len(
            json.dumps(
                {
                    "variantKey": self.variant_key,
                    "price": str(self.price) if self.price is not None else None,
                    "stockStatus": self.stock_status.value,
                    "currency": self.currency,
                }
            ).encode("utf-8")
        )


@dataclass
class ExtractionResult:
    variants: list[ExtractedVariant] = field(default_factory=list)
    product_name: Optional[str] = None
    error: Optional[str] = None


class Extractor(Protocol):
    async def extract(self, url: str) -> ExtractionResult:
        ...


def parse_extraction_payload(data: dict[str, Any]) -> ExtractionResult:
    """
    Build an ExtractionResult from the service's JSON body.

    Expected shape: ``{"name": ..., "variants": [{"variantKey", "price",
    "stockStatus", "currency"}], "error": ...}``. Malformed variants are
    skipped with a warning rather than failing the whole product.
    """
    if not isinstance(data, dict):
        raise ExtractionError("Extractor response is not a JSON object")

    result = ExtractionResult(
        product_name=data.get("name") or data.get("title"),
        error=data.get("error") or None,
    )

    for raw in data.get("variants") or []:
        if not isinstance(raw, dict):
            logger.warning(f"Skipping malformed variant entry: {raw!r:.80}")
            continue
        key = raw.get("variantKey") or raw.get("variant_key")
        if not key:
            logger.warning("Skipping variant without a key")
            continue
        try:
            price = normalize_price(raw.get("price"))
        except (InvalidOperation, ValueError, TypeError):
            logger.warning(f"Unparseable price for variant {key!r}: {raw.get('price')!r}")
            price = None
        result.variants.append(
            ExtractedVariant(
                variant_key=str(key),
                price=price,
                stock_status=StockStatus.parse(raw.get("stockStatus") or raw.get("stock_status")),
                currency=raw.get("currency"),
            )
        )

    return result


def cap_extraction(
    result: ExtractionResult,
    max_variants: Optional[int] = None,
    max_payload_bytes: Optional[int] = None,
    url: str = "",
) -> ExtractionResult:
    """
    Bound the amount of data processed for one product.

    Duplicate variant keys keep their first occurrence. Variants beyond
    ``max_variants`` or past the cumulative ``max_payload_bytes`` are
    dropped with a warning.
    """
    max_variants = max_variants if max_variants is not None else settings.max_variants_per_product
    max_payload_bytes = (
        max_payload_bytes if max_payload_bytes is not None else settings.max_extraction_payload_bytes
    )

    kept: list[ExtractedVariant] = []
    seen: set[str] = set()
    duplicates = 0
    over_count = 0
    over_size = 0
    total_bytes = 0

    for variant in result.variants:
        if variant.variant_key in seen:
            duplicates += 1
            continue
        if len(kept) >= max_variants:
            over_count += 1
            continue
        size = variant.approx_size()
        if total_bytes + size > max_payload_bytes:
            over_size += 1
            continue
        seen.add(variant.variant_key)
        total_bytes += size
        kept.append(variant)

    if duplicates:
        logger.warning(f"Dropped {duplicates} duplicate variant keys for {url}")
    if over_count:
        logger.warning(
            f"Dropped {over_count} variants over the cap of {max_variants} for {url}"
        )
    if over_size:
        logger.warning(
            f"Dropped {over_size} variants over the {max_payload_bytes} byte payload cap for {url}"
        )
    metrics.record_variants_dropped("duplicate", duplicates)
    metrics.record_variants_dropped("count", over_count)
    metrics.record_variants_dropped("size", over_size)

    return ExtractionResult(variants=kept, product_name=result.product_name, error=result.error)


class HttpExtractor:
    """Calls the extraction service: ``POST {extractor_url}`` with ``{"url": ...}``."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_response_bytes: Optional[int] = None,
    ):
        self.endpoint = endpoint or settings.extractor_url
        self.timeout = timeout if timeout is not None else settings.extraction_timeout_seconds
        self.max_response_bytes = (
            max_response_bytes
            if max_response_bytes is not None
            else settings.max_extraction_payload_bytes
        )
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def extract(self, url: str) -> ExtractionResult:
        client = await self._get_client()

        # Stream so an oversized body is rejected without buffering all of it
        async with client.stream("POST", self.endpoint, json={"url": url}) as response:
            if response.status_code >= 400:
                raise ExtractionError(f"Extractor returned HTTP {response.status_code}")

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self.max_response_bytes:
                    raise ExtractionError(
                        f"Extractor response exceeded {self.max_response_bytes} bytes"
                    )

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Extractor returned invalid JSON: {e}") from e

        return parse_extraction_payload(data)
