"""
Shopee Marketplace Adapter

Bearer token + X-Shop-Id header auth. Timestamps arrive as epoch seconds. Listings page with ``cursor``/``next_cursor``
until ``has_more`` is false.
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

SHOPEE_STATUS_MAP = {
    "UNPAID": "pending",
    "PAID": "paid",
    "PROCESSING": "paid",
    "SHIPPED": "shipped",
    "COMPLETED": "delivered",
    "CANCELLED": "cancelled",
    "REFUNDED": "refunded",
}

SHOPEE_ACTIONS = {
    OrderAction.SHIP: "SHIP_ORDER",
    OrderAction.CANCEL: "CANCEL_ORDER",
    OrderAction.REFUND: "REFUND_ORDER",
    OrderAction.DELIVER: "CONFIRM_DELIVERY",
}


def map_shopee_status(status: str | None) -> str:
    return SHOPEE_STATUS_MAP.get((status or "").upper(), "pending")


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def map_shopee_order(order: dict[str, Any]) -> RemoteOrder:
    """Map a Shopee order payload to a RemoteOrder."""
    items = [
        RemoteOrderItem(
            sku=item.get("sku") or "",
            quantity=int(item.get("quantity", 0)),
            unit_price=float(item.get("price", 0) or 0),
            name=item.get("name"),
            product_ref=str(item["item_id"]) if item.get("item_id") is not None else None,
        )
        for item in order.get("items") or []
    ]
    return RemoteOrder(
        platform=Platform.SHOPEE.value,
        platform_order_id=str(order["order_id"]),
        status=map_shopee_status(order.get("order_status")),
        total_amount=float(order.get("total_amount", 0) or 0),
        currency=order.get("currency") or "USD",
        customer_name=order.get("buyer_name"),
        customer_email=order.get("buyer_email") or None,
        tracking_number=order.get("tracking_number"),
        payment_method=order.get("payment_method") or "unknown",
        created_at=_from_epoch(order.get("create_time")),
        updated_at=_from_epoch(order.get("update_time")),
        items=items,
    )


def map_shopee_product(item: dict[str, Any]) -> RemoteProduct:
    """Map a Shopee item payload to a RemoteProduct."""
    return RemoteProduct(
        platform=Platform.SHOPEE.value,
        listing_id=str(item["item_id"]),
        sku=item.get("sku") or "",
        stock_quantity=int(item.get("stock", 0)),
        name=item.get("name"),
        price=float(item["price"]) if item.get("price") is not None else None,
    )


@register_adapter
class ShopeeAdapter(PlatformAdapter):
    """Shopee Open Platform connector."""

    @property
    def platform(self) -> Platform:
        return Platform.SHOPEE

    @property
    def base_url(self) -> str:
        return get_settings().shopee_api_base.rstrip("/")

    def _next_cursor(self, payload: dict[str, Any]) -> str | None:
        return payload.get("next_cursor") if payload.get("has_more") else None

    async def fetch_orders(self, since: datetime | None = None) -> list[RemoteOrder]:
        params = {"updated_after": since.isoformat()} if since else {}
        return await self._fetch_pages("/orders", "orders", map_shopee_order, params)

    async def fetch_products(self) -> list[RemoteProduct]:
        return await self._fetch_pages("/products", "items", map_shopee_product)

    async def push_inventory(self, product_ref: str, quantity: int, sku: str | None = None) -> None:
        await self._request(
            "POST",
            "/inventory/update",
            json={"item_id": product_ref, "quantity": quantity, "sku": sku},
        )

    async def update_order_status(
        self,
        order_ref: str,
        action: OrderAction,
        extra: dict[str, Any] | None = None,
    ) -> None:
        body = {"order_id": order_ref, "action": SHOPEE_ACTIONS[OrderAction(action)]}
        body.update(extra or {})
        await self._request("POST", "/orders/status", json=body)
