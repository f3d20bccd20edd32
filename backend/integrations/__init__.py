"""
Marketplace adapters package.

Pluggable adapter pattern for connecting MarketSync to each marketplace:
  - Shopee       (REST, epoch timestamps)
  - TikTok Shop  (REST, ISO-8601 timestamps)

Usage:
    from integrations.base import get_adapter, Platform

    adapter = get_adapter(
        platform=Platform.SHOPEE,
        tenant_id="...",
        credential=await store.get_credential(tenant_id, "shopee"),
    )
    orders = await adapter.fetch_orders(since=...)
"""

from integrations.base import (
    Credential,
    OrderAction,
    Platform,
    PlatformAdapter,
    RemoteOrder,
    RemoteOrderItem,
    RemoteProduct,
    expand_platforms,
    get_adapter,
    register_adapter,
)
from integrations.credentials import CredentialStore, DatabaseCredentialStore, StaticCredentialStore
from integrations.shopee import ShopeeAdapter
from integrations.tiktokshop import TikTokShopAdapter

__all__ = [
    "Credential",
    "OrderAction",
    "Platform",
    "PlatformAdapter",
    "RemoteOrder",
    "RemoteOrderItem",
    "RemoteProduct",
    "expand_platforms",
    "get_adapter",
    "register_adapter",
    "CredentialStore",
    "DatabaseCredentialStore",
    "StaticCredentialStore",
    "ShopeeAdapter",
    "TikTokShopAdapter",
]
