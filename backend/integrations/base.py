"""
Marketplace Platform Adapter — Abstract Base Class

Shopee and TikTok Shop connectors implement this interface so the sync
executor is platform-agnostic. Adapters translate four generic operations
into platform calls and raise the typed errors from ``core.errors``:

  fetch_orders(since)                        -> list[RemoteOrder]
  fetch_products()                           -> list[RemoteProduct]
  push_inventory(product_ref, quantity)      -> None (raises on failure)
  update_order_status(order_ref, action, **) -> None (raises on failure)

Rate limiting is per HTTP request: the executor attaches a ``call_gate``
(an async context manager) and ``_request`` enters it around every call,
so a paginated fetch spends one admission per page.
"""

import contextlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, TypeVar

import httpx
import structlog

from core.config import get_settings
from core.errors import PermanentFailure, classify_http_error

logger = structlog.get_logger()

T = TypeVar("T")


# ── Platforms ─────────────────────────────────────────────────────────────


class Platform(str, Enum):
    """Supported marketplaces."""

    SHOPEE = "shopee"
    TIKTOKSHOP = "tiktokshop"


ALL_PLATFORMS = "all"


def expand_platforms(platform: str) -> list[str]:
    """Resolve a schedule/job platform (which may be ``all``) to concrete platforms."""
    if platform == ALL_PLATFORMS:
        return [p.value for p in Platform]
    return [Platform(platform).value]


class OrderAction(str, Enum):
    """Order status actions a tenant can push back to the marketplace."""

    SHIP = "ship"
    CANCEL = "cancel"
    REFUND = "refund"
    DELIVER = "deliver"


# ── Remote snapshot records ───────────────────────────────────────────────


@dataclass
class Credential:
    """Per-tenant marketplace credential, held only for the current call."""

    platform: str
    shop_id: str
    access_token: str
    shop_name: str | None = None
    expires_at: datetime | None = None


@dataclass
class RemoteOrderItem:
    sku: str
    quantity: int
    unit_price: float = 0.0
    name: str | None = None
    product_ref: str | None = None


@dataclass
class RemoteOrder:
    """An order as reported by a marketplace, already normalized."""

    platform: str
    platform_order_id: str
    status: str
    total_amount: float
    currency: str = "USD"
    customer_name: str | None = None
    customer_email: str | None = None
    tracking_number: str | None = None
    payment_method: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[RemoteOrderItem] = field(default_factory=list)

    @property
    def item_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def items_payload(self) -> list[dict[str, Any]]:
        return [
            {
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "name": item.name,
                "product_ref": item.product_ref,
            }
            for item in self.items
        ]


@dataclass
class RemoteProduct:
    """A marketplace listing with its current stock."""

    platform: str
    listing_id: str
    sku: str
    stock_quantity: int
    name: str | None = None
    price: float | None = None


# ── Abstract adapter ──────────────────────────────────────────────────────


class PlatformAdapter(ABC):
    """
    Base class for marketplace connectors.

    Lifecycle:
        1. __init__(tenant_id, credential)   — credential comes from the store per job
        2. fetch_orders / fetch_products     — pull remote state
        3. push_inventory / update_order_status — push local state
        4. aclose()                          — release the HTTP client
    """

    base_url: str = ""
    cursor_param: str = "cursor"

    def __init__(
        self,
        tenant_id: str,
        credential: Credential,
        client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.tenant_id = str(tenant_id)
        self.credential = credential
        self.page_size = settings.platform_page_size
        self._client = client or httpx.AsyncClient(timeout=settings.platform_http_timeout_seconds)
        self._owns_client = client is None
        self.call_gate: contextlib.AbstractAsyncContextManager | None = None
        self.logger = logger.bind(
            adapter=self.platform.value,
            tenant_id=self.tenant_id,
            shop_id=credential.shop_id,
        )

    @property
    @abstractmethod
    def platform(self) -> Platform:
        """Return the marketplace this adapter handles."""
        ...

    @abstractmethod
    async def fetch_orders(self, since: datetime | None = None) -> list[RemoteOrder]:
        """Orders updated since ``since``, whenever they were created."""
        ...

    @abstractmethod
    async def fetch_products(self) -> list[RemoteProduct]:
        """All active listings with their current stock."""
        ...

    @abstractmethod
    async def push_inventory(self, product_ref: str, quantity: int, sku: str | None = None) -> None:
        """Set a listing's stock to ``quantity``."""
        ...

    @abstractmethod
    async def update_order_status(self, order_ref: str, action: OrderAction, extra: dict[str, Any] | None = None) -> None:
        """Push a status action (ship, cancel, refund, deliver) for an order."""
        ...

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credential.access_token}",
            "Content-Type": "application/json",
            "X-Shop-Id": self.credential.shop_id,
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Perform one HTTP call, mapping failures onto the sync error taxonomy."""
        url = f"{self.base_url}{path}"
        async with self.call_gate or contextlib.nullcontext():
            try:
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
                response.raise_for_status()
                payload = response.json() if response.content else {}
            except Exception as exc:
                error = classify_http_error(exc, self.platform.value)
                self.logger.warning(
                    "adapter.request_failed",
                    method=method,
                    path=path,
                    reason=error.reason,
                    error=error.message,
                )
                raise error from exc

        if not isinstance(payload, dict):
            raise PermanentFailure(
                f"{self.platform.value} returned a non-object payload for {path}",
                platform=self.platform.value,
            )
        return payload

    def _next_cursor(self, payload: dict[str, Any]) -> str | None:
        """Cursor for the next page, or None on the last one."""
        return None

    def _map_records(self, mapper: Callable[[dict[str, Any]], T], records: list[Any], path: str) -> list[T]:
        try:
            return [mapper(record) for record in records]
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning("adapter.malformed_record", path=path, error=repr(exc))
            raise PermanentFailure(
                f"{self.platform.value} returned a malformed record for {path}",
                platform=self.platform.value,
                details={"error": repr(exc)},
            ) from exc

    async def _fetch_pages(
        self,
        path: str,
        items_key: str,
        mapper: Callable[[dict[str, Any]], T],
        params: dict[str, Any] | None = None,
    ) -> list[T]:
        """GET every page of a listing endpoint; each page is its own request."""
        params = {"limit": self.page_size, **(params or {})}
        results: list[T] = []
        pages = 0
        while True:
            payload = await self._request("GET", path, params=params)
            pages += 1
            results.extend(self._map_records(mapper, payload.get(items_key) or [], path))
            cursor = self._next_cursor(payload)
            # a repeated cursor would loop forever
            if not cursor or cursor == params.get(self.cursor_param):
                break
            params[self.cursor_param] = cursor

        self.logger.info("adapter.pages.fetched", path=path, pages=pages, count=len(results))
        return results

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PlatformAdapter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


# ── Adapter registry ──────────────────────────────────────────────────────

_ADAPTER_REGISTRY: dict[Platform, type[PlatformAdapter]] = {}


def register_adapter(adapter_cls: type[PlatformAdapter]):
    """Decorator: register an adapter class for its platform."""
    _ADAPTER_REGISTRY[adapter_cls.platform.fget(None)] = adapter_cls  # type: ignore
    return adapter_cls


def get_adapter(
    platform: Platform | str,
    tenant_id: str,
    credential: Credential,
    client: httpx.AsyncClient | None = None,
) -> PlatformAdapter:
    """Factory: return the right adapter instance for the given platform."""
    platform = Platform(platform)
    adapter_cls = _ADAPTER_REGISTRY.get(platform)
    if adapter_cls is None:
        raise ValueError(f"No adapter registered for platform: {platform.value}")
    return adapter_cls(tenant_id=tenant_id, credential=credential, client=client)
