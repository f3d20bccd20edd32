"""
Tests for the Reconciliation Engine.

Covers:
  - New order / status transition detection
  - Latest-report-wins for duplicate remote reports
  - Stock breach / restock threshold crossings
"""

from datetime import datetime, timedelta

from sync.reconciliation import (
    ChangeKind,
    NewOrder,
    OrderSnapshot,
    ProductSnapshot,
    Snapshot,
    StatusTransition,
    StockBreach,
    StockRestock,
    dedupe_latest,
    reconcile,
    reconcile_orders,
    reconcile_stock,
    reconcile_with_diagnostics,
)

TENANT = "tenant-1"
T0 = datetime(2026, 3, 1, 12, 0, 0)


def _order(order_id="X1", status="paid", platform="shopee", total=50.0, updated_at=None):
    return OrderSnapshot(
        platform=platform,
        platform_order_id=order_id,
        status=status,
        total_amount=total,
        updated_at=updated_at,
    )


def _product(stock, threshold=10, product_id="p-1"):
    return ProductSnapshot(product_id=product_id, sku="SKU-1", stock_quantity=stock, low_stock_threshold=threshold)


# ── Orders ─────────────────────────────────────────────────────────────


class TestOrderReconciliation:
    def test_remote_order_absent_locally_is_new(self):
        changes = reconcile(TENANT, Snapshot(), Snapshot(orders=[_order(total=1500.0)]))
        assert len(changes) == 1
        assert isinstance(changes[0], NewOrder)
        assert changes[0].entity_id == "shopee:X1"
        assert changes[0].after.total_amount == 1500.0

    def test_unchanged_snapshot_yields_nothing(self):
        snapshot = Snapshot(orders=[_order()])
        assert reconcile(TENANT, snapshot, Snapshot(orders=[_order()])) == []

    def test_single_status_difference_is_one_transition(self):
        local = Snapshot(orders=[_order(status="paid"), _order("X2", status="paid")])
        remote = Snapshot(orders=[_order(status="shipped"), _order("X2", status="paid")])
        changes = reconcile(TENANT, local, remote)
        assert len(changes) == 1
        change = changes[0]
        assert isinstance(change, StatusTransition)
        assert (change.before, change.after) == ("paid", "shipped")

    def test_same_order_id_on_two_platforms_are_distinct(self):
        local = Snapshot(orders=[_order(platform="shopee")])
        remote = Snapshot(orders=[_order(platform="shopee"), _order(platform="tiktokshop")])
        changes = reconcile(TENANT, local, remote)
        assert [c.entity_id for c in changes] == ["tiktokshop:X1"]

    def test_only_latest_of_multiple_reports_is_emitted(self):
        local = Snapshot(orders=[_order(status="pending")])
        remote = Snapshot(
            orders=[
                _order(status="delivered", updated_at=T0 + timedelta(minutes=10)),
                _order(status="paid", updated_at=T0),
                _order(status="shipped", updated_at=T0 + timedelta(minutes=5)),
            ]
        )
        result = reconcile_with_diagnostics(TENANT, local, remote)
        assert len(result.changes) == 1
        assert result.changes[0].after == "delivered"
        assert result.changes[0].before == "pending"

    def test_conflicting_reports_are_recorded_as_ambiguity(self):
        remote = [
            _order(status="cancelled", updated_at=T0),
            _order(status="shipped", updated_at=T0 + timedelta(seconds=1)),
        ]
        result = reconcile_orders([_order(status="paid")], remote)
        assert len(result.ambiguities) == 1
        ambiguity = result.ambiguities[0]
        assert ambiguity.chosen_status == "shipped"
        assert ambiguity.reported_statuses == ["cancelled", "shipped"]

    def test_duplicate_identical_reports_are_not_ambiguous(self):
        result = reconcile_orders([], [_order(), _order()])
        assert len(result.changes) == 1
        assert result.ambiguities == []

    def test_untimestamped_reports_sort_before_timestamped(self):
        remote = [_order(status="shipped", updated_at=T0), _order(status="paid", updated_at=None)]
        result = reconcile_orders([_order(status="pending")], remote)
        assert result.changes[0].after == "shipped"

    def test_new_orders_can_be_excluded(self):
        local = [_order("X1", status="paid")]
        remote = [_order("X1", status="refunded"), _order("X9")]
        result = reconcile_orders(local, remote, include_new_orders=False)
        assert [c.kind for c in result.changes] == [ChangeKind.STATUS_TRANSITION]

    def test_dedupe_latest_keeps_first_seen_order(self):
        records = [
            _order("A", status="paid", updated_at=T0),
            _order("B", status="paid"),
            _order("A", status="shipped", updated_at=T0 + timedelta(minutes=1)),
        ]
        latest = dedupe_latest(records, key=lambda o: o.entity_id, updated_at=lambda o: o.updated_at)
        assert [(o.platform_order_id, o.status) for o in latest] == [("A", "shipped"), ("B", "paid")]


# ── Stock ──────────────────────────────────────────────────────────────


class TestStockReconciliation:
    def test_breach_restock_then_quiet(self):
        first = reconcile(TENANT, Snapshot(products=[_product(12)]), Snapshot(products=[_product(8)]))
        assert len(first) == 1
        assert isinstance(first[0], StockBreach)
        assert (first[0].before, first[0].after) == (12, 8)

        second = reconcile(TENANT, Snapshot(products=[_product(8)]), Snapshot(products=[_product(15)]))
        assert len(second) == 1
        assert isinstance(second[0], StockRestock)

        third = reconcile(TENANT, Snapshot(products=[_product(15)]), Snapshot(products=[_product(15)]))
        assert third == []

    def test_staying_below_threshold_does_not_breach_again(self):
        result = reconcile_stock([_product(8)], [_product(3)])
        assert result.changes == []

    def test_threshold_is_inclusive(self):
        result = reconcile_stock([_product(11)], [_product(10)])
        assert result.of_kind(ChangeKind.STOCK_BREACH)

    def test_zero_stock_is_out_of_stock(self):
        change = reconcile_stock([_product(12)], [_product(0)]).changes[0]
        assert isinstance(change, StockBreach)
        assert change.out_of_stock

    def test_local_threshold_is_authoritative(self):
        remote = ProductSnapshot(product_id="p-1", sku="", stock_quantity=4, low_stock_threshold=0)
        change = reconcile_stock([_product(20, threshold=5)], [remote]).changes[0]
        assert change.product.low_stock_threshold == 5
        assert change.product.sku == "SKU-1"

    def test_unknown_product_is_ignored(self):
        assert reconcile_stock([], [_product(1)]).changes == []
