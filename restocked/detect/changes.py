"""Change detection between stored and freshly extracted variant state.

Everything here is pure: no I/O, no clock, no database. The check worker
feeds in the stored state and the extracted state and persists whatever
comes out.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Union

from restocked.db.models import StockStatus

PRICE_QUANTUM = Decimal("0.01")


class ChangeKind(str, Enum):
    PRICE_DROP = "PRICE_DROP"
    PRICE_INCREASE = "PRICE_INCREASE"
    RESTOCK = "RESTOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    # Stock moved but not between in_stock and out_of_stock (e.g. unknown -> in_stock)
    STOCK_CHANGED = "STOCK_CHANGED"


def normalize_price(value) -> Optional[Decimal]:
    """Coerce an extracted price to a 2-place Decimal; None stays None."""
    if value is None:
        return None
    price = value if isinstance(value, Decimal) else Decimal(str(value))
    if not price.is_finite():
        return None
    return price.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceDelta:
    old_price: Decimal
    new_price: Decimal

    @property
    def percent_change(self) -> Optional[Decimal]:
        """Signed change relative to the old price, in percent (None if old price is 0)."""
        if self.old_price == 0:
            return None
        return (self.new_price - self.old_price) / self.old_price * 100

    @property
    def key(self) -> str:
        return f"price:{self.old_price}->{self.new_price}"


@dataclass(frozen=True)
class StockTransition:
    old_status: StockStatus
    new_status: StockStatus

    @property
    def key(self) -> str:
        return f"stock:{self.old_status.value}->{self.new_status.value}"


ChangeDetail = Union[PriceDelta, StockTransition]


@dataclass(frozen=True)
class VariantState:
    """Price and stock of one variant at one point in time."""

    price: Optional[Decimal]
    stock_status: StockStatus


@dataclass(frozen=True)
class ChangeEvent:
    """
    One detected transition for one variant.

    ``kind`` is the discriminant; ``detail`` is a PriceDelta for the price
    kinds and a StockTransition for the stock kinds. ``since`` is when the
    old state was first observed, which together with the old/new pair
    identifies the transition for deduplication.
    """

    kind: ChangeKind
    product_id: int
    variant_id: int
    detail: ChangeDetail
    since: Optional[datetime] = None

    def __post_init__(self):
        price_kinds = (ChangeKind.PRICE_DROP, ChangeKind.PRICE_INCREASE)
        if self.kind in price_kinds and not isinstance(self.detail, PriceDelta):
            raise TypeError(f"{self.kind.value} requires a PriceDelta detail")
        if self.kind not in price_kinds and not isinstance(self.detail, StockTransition):
            raise TypeError(f"{self.kind.value} requires a StockTransition detail")

    @property
    def change_key(self) -> str:
        since = self.since.isoformat() if self.since else "initial"
        return f"{self.detail.key}@{since}"


def classify_stock(old: StockStatus, new: StockStatus) -> ChangeKind:
    if old == StockStatus.OUT_OF_STOCK and new == StockStatus.IN_STOCK:
        return ChangeKind.RESTOCK
    if old == StockStatus.IN_STOCK and new == StockStatus.OUT_OF_STOCK:
        return ChangeKind.OUT_OF_STOCK
    return ChangeKind.STOCK_CHANGED


def detect_changes(
    old: VariantState,
    new: VariantState,
    *,
    product_id: int,
    variant_id: int,
    since: Optional[datetime] = None,
) -> list[ChangeEvent]:
    """
    Compare stored and extracted state for one variant.

    A missing new price means "not observed" and never produces a price
    event; a missing old price is a first observation, not a change.

    Returns:
        Zero, one or two events (price first, then stock)
    """
    events: list[ChangeEvent] = []

    if old.price is not None and new.price is not None and new.price != old.price:
        kind = ChangeKind.PRICE_DROP if new.price < old.price else ChangeKind.PRICE_INCREASE
        events.append(
            ChangeEvent(
                kind=kind,
                product_id=product_id,
                variant_id=variant_id,
                detail=PriceDelta(old_price=old.price, new_price=new.price),
                since=since,
            )
        )

    if new.stock_status != old.stock_status:
        events.append(
            ChangeEvent(
                kind=classify_stock(old.stock_status, new.stock_status),
                product_id=product_id,
                variant_id=variant_id,
                detail=StockTransition(old_status=old.stock_status, new_status=new.stock_status),
                since=since,
            )
        )

    return events
