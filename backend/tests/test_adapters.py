"""
Tests for the Shopee and TikTok Shop adapters against a mocked HTTP transport.

Covers:
  - Payload mapping (status codes, timestamps, line items)
  - Pagination
  - Per-request rate limit gate
  - Push payloads and auth headers
  - HTTP failures mapped onto the sync error taxonomy
"""

import json
from datetime import datetime

import httpx
import pytest

from core.errors import AuthFailure, PermanentFailure, RateLimited, TransientFailure
from integrations.base import Credential, OrderAction, Platform, expand_platforms, get_adapter
from integrations.shopee import ShopeeAdapter, map_shopee_order, map_shopee_status
from integrations.tiktokshop import TikTokShopAdapter, map_tiktok_order
from sync.rate_limiter import InMemoryCounterStore, PlatformCallGate, RateLimiter


def _adapter(platform: str, handler) -> object:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    credential = Credential(platform=platform, shop_id="shop-42", access_token="secret-token")
    return get_adapter(platform, "tenant-1", credential, client=client)


SHOPEE_ORDER = {
    "order_id": 9001,
    "order_status": "SHIPPED",
    "total_amount": "120.50",
    "currency": "SGD",
    "buyer_name": "Ana",
    "tracking_number": "SPX123",
    "create_time": 1767225600,
    "update_time": 1767229200,
    "items": [{"item_id": 55, "sku": "MUG-1", "quantity": 2, "price": "60.25", "name": "Mug"}],
}

TIKTOK_ORDER = {
    "order_id": "TT-1",
    "order_status": "AWAITING_COLLECTION",
    "total_amount": 30,
    "created_at": "2026-01-01T00:00:00Z",
    "updated_at": "2026-01-01T08:00:00+08:00",
    "line_items": [{"product_id": 7, "sku": "TEE-1", "quantity": 3, "unit_price": 10, "title": "Tee"}],
}


# ── Mapping ────────────────────────────────────────────────────────────


class TestMapping:
    def test_shopee_order(self):
        order = map_shopee_order(SHOPEE_ORDER)
        assert order.platform == "shopee"
        assert order.platform_order_id == "9001"
        assert order.status == "shipped"
        assert order.total_amount == 120.5
        assert order.created_at == datetime(2026, 1, 1, 0, 0)
        assert order.item_quantity == 2
        assert order.items[0].product_ref == "55"

    def test_shopee_completed_is_delivered(self):
        assert map_shopee_status("completed") == "delivered"

    def test_unknown_status_falls_back_to_pending(self):
        assert map_shopee_status("SOMETHING_NEW") == "pending"
        assert map_tiktok_order(TIKTOK_ORDER).status == "pending"

    def test_tiktok_timestamps_are_naive_utc(self):
        order = map_tiktok_order(TIKTOK_ORDER)
        assert order.created_at == datetime(2026, 1, 1, 0, 0)
        assert order.updated_at == datetime(2026, 1, 1, 0, 0)
        assert order.items[0].quantity == 3

    def test_expand_platforms(self):
        assert expand_platforms("all") == ["shopee", "tiktokshop"]
        assert expand_platforms("tiktokshop") == ["tiktokshop"]
        with pytest.raises(ValueError):
            expand_platforms("lazada")


# ── HTTP behaviour ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestShopeeAdapter:
    async def test_factory_returns_registered_adapter(self):
        adapter = _adapter("shopee", lambda request: httpx.Response(200, json={}))
        assert isinstance(adapter, ShopeeAdapter)
        assert adapter.platform is Platform.SHOPEE
        await adapter.aclose()

    async def test_fetch_orders_follows_cursor(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if "cursor" not in request.url.params:
                return httpx.Response(200, json={"orders": [SHOPEE_ORDER], "has_more": True, "next_cursor": "c2"})
            return httpx.Response(200, json={"orders": [{**SHOPEE_ORDER, "order_id": 9002}], "has_more": False})

        async with _adapter("shopee", handler) as adapter:
            orders = await adapter.fetch_orders(since=datetime(2026, 1, 1))

        assert [o.platform_order_id for o in orders] == ["9001", "9002"]
        assert seen[0].headers["Authorization"] == "Bearer secret-token"
        assert seen[0].headers["X-Shop-Id"] == "shop-42"
        assert seen[0].url.params["updated_after"] == "2026-01-01T00:00:00"
        assert "created_after" not in seen[0].url.params
        assert seen[1].url.params["cursor"] == "c2"

    async def test_fetch_products_follows_cursor(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("cursor") == "c2":
                return httpx.Response(200, json={"items": [{"item_id": 56, "sku": "MUG-2", "stock": 0}], "has_more": False})
            return httpx.Response(
                200, json={"items": [{"item_id": 55, "sku": "MUG-1", "stock": 9}], "has_more": True, "next_cursor": "c2"}
            )

        async with _adapter("shopee", handler) as adapter:
            products = await adapter.fetch_products()

        assert [(p.listing_id, p.stock_quantity) for p in products] == [("55", 9), ("56", 0)]

    async def test_repeated_cursor_stops_paging(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"items": [], "has_more": True, "next_cursor": "same"})

        async with _adapter("shopee", handler) as adapter:
            assert await adapter.fetch_products() == []
        assert len(calls) == 2

    async def test_gate_admits_each_page(self):
        limiter = RateLimiter(InMemoryCounterStore(), {"shopee": 1})
        recorded = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"orders": [SHOPEE_ORDER], "has_more": True, "next_cursor": "c2"})

        async with _adapter("shopee", handler) as adapter:
            adapter.call_gate = PlatformCallGate(limiter, "tenant-1", "shopee", on_record=lambda: recorded.append(1))
            with pytest.raises(RateLimited):
                await adapter.fetch_orders()

        assert recorded == [1]

    async def test_malformed_order_is_permanent(self):
        payload = {"orders": [{"order_status": "PAID"}], "has_more": False}
        async with _adapter("shopee", lambda request: httpx.Response(200, json=payload)) as adapter:
            with pytest.raises(PermanentFailure) as excinfo:
                await adapter.fetch_orders()
        assert excinfo.value.retryable is False
        assert "order_id" in excinfo.value.details["error"]

    async def test_non_numeric_stock_is_permanent(self):
        payload = {"items": [{"item_id": 55, "stock": "lots"}], "has_more": False}
        async with _adapter("shopee", lambda request: httpx.Response(200, json=payload)) as adapter:
            with pytest.raises(PermanentFailure):
                await adapter.fetch_products()

    async def test_push_inventory_payload(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"success": True})

        async with _adapter("shopee", handler) as adapter:
            await adapter.push_inventory("55", 7, sku="MUG-1")

        assert bodies == [("/inventory/update", {"item_id": "55", "quantity": 7, "sku": "MUG-1"})]

    async def test_order_action_payload(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        async with _adapter("shopee", handler) as adapter:
            await adapter.update_order_status("9001", OrderAction.SHIP, {"tracking_number": "SPX1"})

        assert bodies == [{"order_id": "9001", "action": "SHIP_ORDER", "tracking_number": "SPX1"}]

    @pytest.mark.parametrize(
        "status_code, error_type",
        [(503, TransientFailure), (429, TransientFailure), (401, AuthFailure), (403, AuthFailure), (400, PermanentFailure)],
    )
    async def test_http_errors_are_classified(self, status_code, error_type):
        handler = lambda request: httpx.Response(status_code, json={"message": "nope"})  # noqa: E731
        async with _adapter("shopee", handler) as adapter:
            with pytest.raises(error_type) as excinfo:
                await adapter.fetch_products()
        assert excinfo.value.platform == "shopee"
        assert excinfo.value.details["status_code"] == status_code

    async def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _adapter("shopee", handler) as adapter:
            with pytest.raises(TransientFailure):
                await adapter.fetch_orders()

    async def test_non_object_payload_is_permanent(self):
        async with _adapter("shopee", lambda request: httpx.Response(200, json=[1, 2])) as adapter:
            with pytest.raises(PermanentFailure):
                await adapter.fetch_products()


@pytest.mark.asyncio
class TestTikTokShopAdapter:
    async def test_fetch_orders_follows_page_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("page_token") == "p2":
                return httpx.Response(200, json={"orders": [{**TIKTOK_ORDER, "order_id": "TT-2"}]})
            return httpx.Response(200, json={"orders": [TIKTOK_ORDER], "next_page_token": "p2"})

        async with _adapter("tiktokshop", handler) as adapter:
            assert isinstance(adapter, TikTokShopAdapter)
            orders = await adapter.fetch_orders()

        assert [o.platform_order_id for o in orders] == ["TT-1", "TT-2"]

    async def test_fetch_products_follows_page_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("page_token") == "p2":
                return httpx.Response(200, json={"products": [{"product_id": 8, "sku": "TEE-2", "stock": 1}]})
            payload = {"products": [{"product_id": 7, "sku": "TEE-1", "stock": 4, "title": "Tee", "price": "10.0"}]}
            return httpx.Response(200, json={**payload, "next_page_token": "p2"})

        async with _adapter("tiktokshop", handler) as adapter:
            products = await adapter.fetch_products()
        assert [(p.listing_id, p.sku, p.stock_quantity) for p in products] == [("7", "TEE-1", 4), ("8", "TEE-2", 1)]

    async def test_missing_product_id_is_permanent(self):
        payload = {"products": [{"sku": "TEE-1", "stock": 4}]}
        async with _adapter("tiktokshop", lambda request: httpx.Response(200, json=payload)) as adapter:
            with pytest.raises(PermanentFailure):
                await adapter.fetch_products()

    async def test_order_action_uses_upper_case_action(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        async with _adapter("tiktokshop", handler) as adapter:
            await adapter.update_order_status("TT-1", OrderAction.REFUND)

        assert bodies == [{"order_id": "TT-1", "action": "REFUND"}]
