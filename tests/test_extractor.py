"""Tests for extraction parsing and caps."""

import json
from decimal import Decimal

import httpx
import pytest

from restocked.db.models import StockStatus
from restocked.ingest.extractor import (
    ExtractedVariant,
    ExtractionError,
    ExtractionResult,
    HttpExtractor,
    cap_extraction,
    parse_extraction_payload,
)


def _variants(n: int, prefix: str = "v") -> list[ExtractedVariant]:
    return [
        ExtractedVariant(f"{prefix}{i}", Decimal("10.00"), StockStatus.IN_STOCK, "USD")
        for i in range(n)
    ]


def test_parse_payload():
    result = parse_extraction_payload(
        {
            "name": "Trail Runner",
            "variants": [
                {"variantKey": "42", "price": "99.5", "stockStatus": "in_stock", "currency": "EUR"},
                {"variant_key": "43", "price": None, "stock_status": "OUT_OF_STOCK"},
                {"variantKey": "44", "price": 12, "stockStatus": "preorder"},
            ],
        }
    )

    assert result.product_name == "Trail Runner"
    assert result.error is None
    assert [v.variant_key for v in result.variants] == ["42", "43", "44"]
    assert result.variants[0].price == Decimal("99.50")
    assert result.variants[0].currency == "EUR"
    assert result.variants[1].price is None
    assert result.variants[1].stock_status == StockStatus.OUT_OF_STOCK
    assert result.variants[2].stock_status == StockStatus.UNKNOWN


def test_parse_skips_malformed_variants():
    result = parse_extraction_payload(
        {"variants": ["junk", {"price": "1.00"}, {"variantKey": "ok", "price": "abc"}]}
    )
    assert [v.variant_key for v in result.variants] == ["ok"]
    assert result.variants[0].price is None


def test_parse_rejects_non_object():
    with pytest.raises(ExtractionError):
        parse_extraction_payload(["not", "an", "object"])


def test_cap_variant_count():
    capped = cap_extraction(ExtractionResult(variants=_variants(10)), max_variants=3, max_payload_bytes=10**6)
    assert [v.variant_key for v in capped.variants] == ["v0", "v1", "v2"]


def test_cap_payload_size():
    variants = _variants(10)
    one = variants[0].approx_size()
    capped = cap_extraction(
        ExtractionResult(variants=variants), max_variants=100, max_payload_bytes=one * 4 + 1
    )
    assert len(capped.variants) == 4


def test_cap_drops_duplicate_keys():
    variants = [
        ExtractedVariant("a", Decimal("1.00"), StockStatus.IN_STOCK),
        ExtractedVariant("a", Decimal("2.00"), StockStatus.OUT_OF_STOCK),
        ExtractedVariant("b", Decimal("3.00"), StockStatus.IN_STOCK),
    ]
    capped = cap_extraction(ExtractionResult(variants=variants), max_variants=10, max_payload_bytes=10**6)
    assert [(v.variant_key, v.price) for v in capped.variants] == [("a", Decimal("1.00")), ("b", Decimal("3.00"))]


def test_cap_keeps_name_and_error():
    capped = cap_extraction(
        ExtractionResult(variants=[], product_name="X", error=None), max_variants=1, max_payload_bytes=1
    )
    assert capped.product_name == "X"


def _extractor_with(handler, max_bytes: int = 10_000) -> HttpExtractor:
    extractor = HttpExtractor(endpoint="http://extractor.test/extract", timeout=5, max_response_bytes=max_bytes)
    extractor._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return extractor


@pytest.mark.asyncio
async def test_http_extractor_parses_response():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"url": "https://shop.example.com/p/1"}
        return httpx.Response(
            200, json={"name": "Shoe", "variants": [{"variantKey": "42", "price": "10", "stockStatus": "in_stock"}]}
        )

    extractor = _extractor_with(handler)
    result = await extractor.extract("https://shop.example.com/p/1")
    await extractor.close()

    assert result.product_name == "Shoe"
    assert result.variants[0].price == Decimal("10.00")


@pytest.mark.asyncio
async def test_http_extractor_http_error():
    extractor = _extractor_with(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(ExtractionError):
        await extractor.extract("https://shop.example.com/p/1")
    await extractor.close()


@pytest.mark.asyncio
async def test_http_extractor_rejects_oversized_body():
    big = {"variants": [{"variantKey": str(i), "price": "1"} for i in range(500)]}
    extractor = _extractor_with(lambda request: httpx.Response(200, json=big), max_bytes=1000)
    with pytest.raises(ExtractionError):
        await extractor.extract("https://shop.example.com/p/1")
    await extractor.close()
