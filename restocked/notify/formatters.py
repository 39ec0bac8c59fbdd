"""Message and email formatting for notifications."""

from decimal import Decimal
from html import escape
from typing import Optional

from restocked.db.models import NotificationType
from restocked.detect.changes import ChangeEvent, PriceDelta, StockTransition


def format_price(price: Optional[Decimal | str], currency: Optional[str] = None) -> str:
    if price is None:
        return "n/a"
    suffix = f" {currency}" if currency else ""
    return f"{Decimal(str(price)):.2f}{suffix}"


def format_percent(percent: Optional[Decimal]) -> str:
    if percent is None:
        return ""
    return f"{abs(percent):.1f}%"


def format_change_message(
    product_name: str,
    notification_type: NotificationType,
    event: ChangeEvent,
    currency: Optional[str] = None,
) -> str:
    """One-line, human-readable description for the in-app feed."""
    detail = event.detail
    if isinstance(detail, PriceDelta):
        old = format_price(detail.old_price, currency)
        new = format_price(detail.new_price, currency)
        percent = format_percent(detail.percent_change)
        verb = "dropped" if notification_type == NotificationType.PRICE_DROP else "increased"
        by = f" by {percent}" if percent else ""
        return f"{product_name} price {verb}{by} from {old} to {new}"

    if notification_type == NotificationType.RESTOCK:
        return f"{product_name} is back in stock!"
    if notification_type == NotificationType.OUT_OF_STOCK:
        return f"{product_name} is now out of stock"
    if not isinstance(detail, StockTransition):
        raise TypeError(f"Cannot describe {type(detail).__name__} as a stock change")
    return (
        f"{product_name} stock changed from {detail.old_status.value} "
        f"to {detail.new_status.value}"
    )


def email_subject(notification_type: str, product_name: str) -> str:
    if notification_type == NotificationType.RESTOCK.value:
        return f"{product_name} is back in stock!"
    if notification_type == NotificationType.PRICE_DROP.value:
        return f"Price drop: {product_name}"
    if notification_type == NotificationType.PRICE_INCREASE.value:
        return f"Price update: {product_name}"
    if notification_type == NotificationType.OUT_OF_STOCK.value:
        return f"{product_name} is out of stock"
    return f"Update: {product_name}"


def email_body(
    notification_type: str,
    payload: dict,
    product_name: str,
    product_url: str,
    frontend_url: str,
) -> str:
    """HTML email body for one notification."""
    name = escape(product_name)
    currency = payload.get("currency")

    if notification_type in (
        NotificationType.PRICE_DROP.value,
        NotificationType.PRICE_INCREASE.value,
    ):
        is_drop = notification_type == NotificationType.PRICE_DROP.value
        percent = payload.get("percent_change")
        percent_line = (
            f"<br><strong>{'&darr;' if is_drop else '&uarr;'} {abs(Decimal(percent)):.1f}%</strong>"
            if percent is not None
            else ""
        )
        headline = "Price Drop" if is_drop else "Price Update"
        content = (
            f"<h2>{headline}</h2>"
            f"<p>{name} price changed from "
            f"{escape(format_price(payload.get('old_price'), currency))} to "
            f"{escape(format_price(payload.get('new_price'), currency))}{percent_line}</p>"
        )
    elif notification_type == NotificationType.RESTOCK.value:
        content = f"<h2>Back in Stock!</h2><p>{name} is now available!</p>"
    else:
        content = f"<h2>Out of Stock</h2><p>{name} is now out of stock</p>"

    variant_key = payload.get("variant_key")
    variant_line = f"<p>Variant: {escape(str(variant_key))}</p>" if variant_key else ""

    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        f"{content}{variant_line}"
        f"<p><a href=\"{escape(product_url, quote=True)}\">View Product</a></p>"
        "<hr>"
        "<p style=\"font-size: 12px; color: #6b7280;\">"
        "You're receiving this because you're tracking this product on Restocked. "
        f"<a href=\"{escape(frontend_url, quote=True)}/dashboard\">Manage your tracked items</a>"
        "</p></body></html>"
    )
