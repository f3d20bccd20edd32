"""
In-memory marketplaces for executor, scheduler and API tests.

A FakeShop holds what one marketplace reports for the tenant and records
the calls it received; FakeMarketplace.adapter has the adapter factory
signature so it can be injected wherever ``get_adapter`` is. Each fake
method stands for one HTTP request and passes the adapter's call gate.
"""

from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime

from core.errors import SyncError
from integrations.base import OrderAction, RemoteOrder, RemoteOrderItem, RemoteProduct


@dataclass
class FakeShop:
    """What one marketplace reports for the tenant, plus the calls it received."""

    orders: list[RemoteOrder] = field(default_factory=list)
    products: list[RemoteProduct] = field(default_factory=list)
    fail_with: Exception | None = None
    fail_push_for: dict[str, SyncError] = field(default_factory=dict)
    pushes: list[tuple[str, int]] = field(default_factory=list)
    actions: list[tuple[str, OrderAction, dict | None]] = field(default_factory=list)
    fetch_since: list[datetime | None] = field(default_factory=list)
    closed: int = 0


class FakeAdapter:
    def __init__(self, platform: str, shop: FakeShop):
        self.platform = platform
        self.shop = shop
        self.call_gate = None

    def _gate(self):
        return self.call_gate or nullcontext()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.shop.closed += 1

    async def fetch_orders(self, since=None):
        async with self._gate():
            self.shop.fetch_since.append(since)
            if self.shop.fail_with is not None:
                raise self.shop.fail_with
            return list(self.shop.orders)

    async def fetch_products(self):
        async with self._gate():
            if self.shop.fail_with is not None:
                raise self.shop.fail_with
            return list(self.shop.products)

    async def push_inventory(self, product_ref, quantity, sku=None):
        async with self._gate():
            error = self.shop.fail_push_for.get(product_ref)
            if error is not None:
                raise error
            self.shop.pushes.append((product_ref, quantity))

    async def update_order_status(self, order_ref, action, extra=None):
        async with self._gate():
            if self.shop.fail_with is not None:
                raise self.shop.fail_with
            self.shop.actions.append((order_ref, action, extra))


class FakeMarketplace:
    def __init__(self):
        self.shops = {"shopee": FakeShop(), "tiktokshop": FakeShop()}
        self.opened: list[str] = []

    def adapter(self, platform, tenant_id, credential):
        self.opened.append(platform)
        return FakeAdapter(platform, self.shops[platform])


def remote_order(
    order_id: str,
    status: str = "paid",
    platform: str = "shopee",
    total: float = 50.0,
    quantity: int = 1,
    updated_at: datetime | None = None,
    tracking_number: str | None = None,
) -> RemoteOrder:
    return RemoteOrder(
        platform=platform,
        platform_order_id=order_id,
        status=status,
        total_amount=total,
        customer_name="Jane Buyer",
        tracking_number=tracking_number,
        updated_at=updated_at,
        items=[RemoteOrderItem(sku="SKU-1", quantity=quantity, unit_price=total / max(quantity, 1))],
    )


def remote_listing(listing_id: str, stock: int, platform: str = "shopee", sku: str = "SKU-1") -> RemoteProduct:
    return RemoteProduct(platform=platform, listing_id=listing_id, sku=sku, stock_quantity=stock)
