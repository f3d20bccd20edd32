"""
Reconciliation Engine — diff last-known local state against fresh remote state.

Pure functions: no I/O, no logging, no clock. The executor feeds in
snapshots and gets back Change records for the alert emitter.

Orders are matched by (platform, platform_order_id):
  - remote order absent locally            -> NewOrder
  - remote order with a different status   -> StatusTransition (latest only)

Products are matched by local product id:
  - stock crosses to at/below threshold    -> StockBreach
  - stock crosses back above threshold     -> StockRestock

A snapshot may report the same order more than once in one poll. Reports are
ordered by remote ``updated_at`` and only the most recent one is diffed, so a
single cycle never yields more than one transition per order. Disagreeing
duplicates are returned as ReconciliationAmbiguity records for the caller to
log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, ClassVar, Iterable, TypeVar, Union

from core.errors import ReconciliationAmbiguity

T = TypeVar("T")


class ChangeKind(str, Enum):
    NEW_ORDER = "new_order"
    STATUS_TRANSITION = "status_transition"
    STOCK_BREACH = "stock_breach"
    STOCK_RESTOCK = "stock_restock"


# ── Snapshot records ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class OrderSnapshot:
    platform: str
    platform_order_id: str
    status: str
    total_amount: float = 0.0
    currency: str = "USD"
    customer_name: str | None = None
    item_quantity: int = 0
    tracking_number: str | None = None
    updated_at: datetime | None = None

    @property
    def entity_id(self) -> str:
        return order_entity_id(self.platform, self.platform_order_id)


@dataclass(frozen=True)
class ProductSnapshot:
    product_id: str
    sku: str
    stock_quantity: int
    low_stock_threshold: int
    name: str | None = None

    @property
    def entity_id(self) -> str:
        return str(self.product_id)

    @property
    def is_low(self) -> bool:
        return self.stock_quantity <= self.low_stock_threshold


@dataclass
class Snapshot:
    orders: list[OrderSnapshot] = field(default_factory=list)
    products: list[ProductSnapshot] = field(default_factory=list)


def order_entity_id(platform: str, platform_order_id: str) -> str:
    return f"{platform}:{platform_order_id}"


# ── Change variants ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class NewOrder:
    kind: ClassVar[ChangeKind] = ChangeKind.NEW_ORDER

    entity_id: str
    after: OrderSnapshot
    before: None = None


@dataclass(frozen=True)
class StatusTransition:
    kind: ClassVar[ChangeKind] = ChangeKind.STATUS_TRANSITION

    entity_id: str
    before: str
    after: str
    order: OrderSnapshot


@dataclass(frozen=True)
class StockBreach:
    kind: ClassVar[ChangeKind] = ChangeKind.STOCK_BREACH

    entity_id: str
    before: int
    after: int
    product: ProductSnapshot

    @property
    def out_of_stock(self) -> bool:
        return self.after <= 0


@dataclass(frozen=True)
class StockRestock:
    kind: ClassVar[ChangeKind] = ChangeKind.STOCK_RESTOCK

    entity_id: str
    before: int
    after: int
    product: ProductSnapshot


Change = Union[NewOrder, StatusTransition, StockBreach, StockRestock]


@dataclass
class ReconciliationResult:
    changes: list[Change] = field(default_factory=list)
    ambiguities: list[ReconciliationAmbiguity] = field(default_factory=list)

    def of_kind(self, kind: ChangeKind) -> list[Change]:
        return [c for c in self.changes if c.kind == kind]


# ── Helpers ───────────────────────────────────────────────────────────────


def latest_reports(
    records: Iterable[T],
    key: Callable[[T], str],
    updated_at: Callable[[T], datetime | None],
) -> dict[str, list[T]]:
    """Group reports by key, each group sorted oldest → newest.

    Reports without a timestamp sort before timestamped ones; ties keep the
    order the remote snapshot listed them in.
    """
    grouped: dict[str, list[tuple[int, T]]] = {}
    for position, record in enumerate(records):
        grouped.setdefault(key(record), []).append((position, record))

    ordered: dict[str, list[T]] = {}
    for entity, reports in grouped.items():
        reports.sort(key=lambda pr: (updated_at(pr[1]) is not None, updated_at(pr[1]) or datetime.min, pr[0]))
        ordered[entity] = [record for _, record in reports]
    return ordered


def dedupe_latest(
    records: Iterable[T],
    key: Callable[[T], str],
    updated_at: Callable[[T], datetime | None],
) -> list[T]:
    """Most recent report per key, in first-seen order."""
    return [reports[-1] for reports in latest_reports(records, key, updated_at).values()]


# ── Orders ────────────────────────────────────────────────────────────────


def reconcile_orders(
    local_orders: Iterable[OrderSnapshot],
    remote_orders: Iterable[OrderSnapshot],
    include_new_orders: bool = True,
) -> ReconciliationResult:
    local = {o.entity_id: o for o in local_orders}
    result = ReconciliationResult()

    grouped = latest_reports(remote_orders, key=lambda o: o.entity_id, updated_at=lambda o: o.updated_at)
    for entity_id, reports in grouped.items():
        latest = reports[-1]
        statuses = [r.status for r in reports]
        if len(set(statuses)) > 1:
            result.ambiguities.append(
                ReconciliationAmbiguity(
                    entity_id=entity_id,
                    reported_statuses=statuses,
                    chosen_status=latest.status,
                    details={"reports": len(reports)},
                )
            )

        existing = local.get(entity_id)
        if existing is None:
            if include_new_orders:
                result.changes.append(NewOrder(entity_id=entity_id, after=latest))
            continue

        if existing.status != latest.status:
            result.changes.append(
                StatusTransition(
                    entity_id=entity_id,
                    before=existing.status,
                    after=latest.status,
                    order=latest,
                )
            )

    return result


# ── Stock ─────────────────────────────────────────────────────────────────


def reconcile_stock(
    local_products: Iterable[ProductSnapshot],
    remote_products: Iterable[ProductSnapshot],
) -> ReconciliationResult:
    """Threshold crossings between the last known and the fresh stock level.

    A product already below threshold that stays below produces nothing, so a
    breach is reported once per crossing rather than once per poll.
    """
    local = {p.entity_id: p for p in local_products}
    result = ReconciliationResult()

    for remote in remote_products:
        previous = local.get(remote.entity_id)
        if previous is None:
            continue
        # the fresh snapshot may not carry the threshold; the local row owns it
        current = ProductSnapshot(
            product_id=remote.product_id,
            sku=remote.sku or previous.sku,
            stock_quantity=remote.stock_quantity,
            low_stock_threshold=previous.low_stock_threshold,
            name=remote.name or previous.name,
        )
        if current.is_low and not previous.is_low:
            result.changes.append(
                StockBreach(
                    entity_id=current.entity_id,
                    before=previous.stock_quantity,
                    after=current.stock_quantity,
                    product=current,
                )
            )
        elif previous.is_low and not current.is_low:
            result.changes.append(
                StockRestock(
                    entity_id=current.entity_id,
                    before=previous.stock_quantity,
                    after=current.stock_quantity,
                    product=current,
                )
            )

    return result


# ── Entry point ───────────────────────────────────────────────────────────


def reconcile_with_diagnostics(
    tenant_id: str,
    local: Snapshot,
    remote: Snapshot,
    include_new_orders: bool = True,
) -> ReconciliationResult:
    orders = reconcile_orders(local.orders, remote.orders, include_new_orders=include_new_orders)
    stock = reconcile_stock(local.products, remote.products)
    return ReconciliationResult(
        changes=orders.changes + stock.changes,
        ambiguities=orders.ambiguities + stock.ambiguities,
    )


def reconcile(tenant_id: str, local: Snapshot, remote: Snapshot) -> list[Change]:
    """Changes between ``local`` and ``remote`` for one tenant."""
    return reconcile_with_diagnostics(tenant_id, local, remote).changes
