"""
TikTok Shop Marketplace Adapter

Bearer token + X-Shop-Id header auth. Timestamps arrive as ISO-8601 strings.
"""

from datetime import datetime, timezone
from typing import Any

from core.config import get_settings
from integrations.base import (
    OrderAction,
    Platform,
    PlatformAdapter,
    RemoteOrder,
    RemoteOrderItem,
    RemoteProduct,
    register_adapter,
)

TIKTOK_STATUS_MAP = {
    "CREATED": "pending",
    "UNPAID": "pending",
    "PAID": "paid",
    "PROCESSING": "paid",
    "SHIPPED": "shipped",
    "DELIVERED": "delivered",
    "CANCELLED": "cancelled",
    "REFUNDED": "refunded",
}


def map_tiktok_status(status: str | None) -> str:
    return TIKTOK_STATUS_MAP.get((status or "").upper(), "pending")


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def map_tiktok_order(order: dict[str, Any]) -> RemoteOrder:
    """Map a TikTok Shop order payload to a RemoteOrder."""
    items = [
        RemoteOrderItem(
            sku=item.get("sku") or "",
            quantity=int(item.get("quantity", 0)),
            unit_price=float(item.get("unit_price", 0) or 0),
            name=item.get("title"),
            product_ref=str(item["product_id"]) if item.get("product_id") is not None else None,
        )
        for item in order.get("line_items") or []
    ]
    return RemoteOrder(
        platform=Platform.TIKTOKSHOP.value,
        platform_order_id=str(order["order_id"]),
        status=map_tiktok_status(order.get("order_status")),
        total_amount=float(order.get("total_amount", 0) or 0),
        currency=order.get("currency") or "USD",
        customer_name=order.get("buyer_name"),
        customer_email=order.get("buyer_email") or None,
        tracking_number=order.get("tracking_number"),
        payment_method=order.get("payment_method") or "unknown",
        created_at=_parse_iso(order.get("created_at")),
        updated_at=_parse_iso(order.get("updated_at")),
        items=items,
    )


def map_tiktok_product(product: dict[str, Any]) -> RemoteProduct:
    return RemoteProduct(
        platform=Platform.TIKTOKSHOP.value,
        listing_id=str(product["product_id"]),
        sku=product.get("sku") or "",
        stock_quantity=int(product.get("stock", 0)),
        name=product.get("title"),
        price=float(product["price"]) if product.get("price") is not None else None,
    )


@register_adapter
class TikTokShopAdapter(PlatformAdapter):
    """TikTok Shop Open API connector."""

    cursor_param = "page_token"

    @property
    def platform(self) -> Platform:
        return Platform.TIKTOKSHOP

    @property
    def base_url(self) -> str:
        return get_settings().tiktokshop_api_base.rstrip("/")

    def _next_cursor(self, payload: dict[str, Any]) -> str | None:
        return payload.get("next_page_token") or None

    async def fetch_orders(self, since: datetime | None = None) -> list[RemoteOrder]:
        params = {"updated_after": since.isoformat()} if since else {}
        return await self._fetch_pages("/orders", "orders", map_tiktok_order, params)

    async def fetch_products(self) -> list[RemoteProduct]:
        return await self._fetch_pages("/products", "products", map_tiktok_product)

    async def push_inventory(self, product_ref: str, quantity: int, sku: str | None = None) -> None:
        await self._request(
            "POST",
            "/inventory/update",
            json={"product_id": product_ref, "stock": quantity, "sku": sku},
        )

    async def update_order_status(
        self,
        order_ref: str,
        action: OrderAction,
        extra: dict[str, Any] | None = None,
    ) -> None:
        body = {"order_id": order_ref, "action": OrderAction(action).value.upper()}
        body.update(extra or {})
        await self._request("POST", "/orders/status", json=body)
