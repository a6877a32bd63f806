"""
Unit Tests - BatchOrders Reconciliation
"""
from datetime import datetime

import pytest

from printbatch.errors import ConfigurationError
from printbatch.reconciliation.batch_orders import BatchOrdersReconciler, cells_equivalent, rows_equivalent

CREATED = datetime(2024, 5, 8, 10, 0)


@pytest.fixture
def reconciler(store, test_settings, clock):
    return BatchOrdersReconciler(store, test_settings, clock)


@pytest.fixture
def seeded(add_rows):
    add_rows(
        "Batches",
        {"BatchID": "B1", "PrintBatchName": "09/05/2024 - 8x6 - Run 1", "RoyalMailBatchNumber": ""},
        {"BatchID": "B2", "PrintBatchName": "09/05/2024 - 5x4 - RM-5", "RoyalMailBatchNumber": "RM-5"},
    )
    add_rows("Orders", {"OrderName": "#1001", "CreatedAt": CREATED, "OrderStatus": "In Production"})
    add_rows(
        "OrderItems",
        {"OrderName": "#1001", "PrintBatchID": "B1", "PrintUnits": 3},
        {"OrderName": "#1001", "PrintBatchID": "B1", "PrintUnits": 4},
        {"OrderName": "#1002", "PrintBatchID": "B2", "PrintUnits": 2},
        {"OrderName": "#1003", "PrintBatchID": "", "PrintUnits": 1},
    )


def live_rows(records):
    return [r for r in records("BatchOrders") if r["BatchOrderID"]]


class TestEquivalence:
    """Tests for value comparison"""

    def test_dates_by_instant(self):
        assert cells_equivalent(datetime(2024, 5, 1, 10, 0), "2024-05-01 10:00:00")
        assert not cells_equivalent(datetime(2024, 5, 1, 10, 0), "2024-05-01 11:00:00")

    def test_other_values_by_text(self):
        assert cells_equivalent(3, "3")
        assert cells_equivalent(None, "")
        assert not cells_equivalent("New", "Packed")

    def test_ignored_column(self):
        assert rows_equivalent(["a", 1], ["a", 2], ignore=1)
        assert not rows_equivalent(["a", 1], ["b", 1], ignore=1)


class TestReconcile:
    """Tests for BatchOrdersReconciler"""

    def test_builds_rows(self, reconciler, seeded, records, clock):
        """One row per (batch, order) pair with aggregated counts"""
        result = reconciler.reconcile()

        assert result.desired == 2
        assert result.appended == 2

        rows = live_rows(records)
        assert [r["BatchOrderID"] for r in rows] == ["B1|#1001", "B2|#1002"]

        first = rows[0]
        assert first["BatchID"] == "B1"
        assert first["PrintBatchName"] == "09/05/2024 - 8x6 - Run 1"
        assert first["OrderCreatedAt"] == CREATED
        assert first["OrderStatus"] == "In Production"
        assert first["OrderItemCount"] == 2
        assert first["PrintUnits"] == 7
        assert first["LastUpdatedAt"] == clock()

    def test_missing_order_defaults_to_new(self, reconciler, seeded, records):
        reconciler.reconcile()

        second = live_rows(records)[1]
        assert second["OrderStatus"] == "New"
        assert second["OrderCreatedAt"] == ""
        assert second["RoyalMailBatchNumber"] == "RM-5"

    def test_rerun_is_noop(self, reconciler, seeded, store):
        """No data change means nothing updated, appended or cleared"""
        reconciler.reconcile()
        store.clear_operations()

        result = reconciler.reconcile()

        assert (result.updated, result.appended, result.cleared) == (0, 0, 0)
        assert store.mutations("BatchOrders") == []

    def test_rerun_against_text_values(self, reconciler, seeded, add_rows, store):
        """Rows stored as text compare equal to freshly built values"""
        add_rows(
            "BatchOrders",
            {
                "BatchOrderID": "B1|#1001", "BatchID": "B1", "PrintBatchName": "09/05/2024 - 8x6 - Run 1",
                "OrderName": "#1001", "OrderCreatedAt": "2024-05-08 10:00:00", "OrderStatus": "In Production",
                "OrderItemCount": "2", "PrintUnits": "7", "LastUpdatedAt": "2024-05-01 00:00:00",
            },
        )

        result = reconciler.reconcile()

        assert result.updated == 0
        assert result.appended == 1

    def test_changed_row_overwritten(self, reconciler, seeded, store, records):
        reconciler.reconcile()
        status_col = store.get_headers("Orders").index("OrderStatus") + 1
        store.write_rows("Orders", 2, [["Ready to Pack"]], start_col=status_col)

        result = reconciler.reconcile()

        assert result.updated == 1
        assert live_rows(records)[0]["OrderStatus"] == "Ready to Pack"

    def test_stale_and_duplicate_keys_cleared(self, reconciler, seeded, add_rows, records):
        """Rows for pairs no longer present are wiped, not deleted"""
        add_rows(
            "BatchOrders",
            {"BatchOrderID": "B9|#9999", "BatchID": "B9", "OrderName": "#9999"},
            {"BatchOrderID": "B1|#1001", "BatchID": "B1", "OrderName": "#1001"},
            {"BatchOrderID": "B1|#1001", "BatchID": "B1", "OrderName": "#1001"},
        )

        result = reconciler.reconcile()

        assert result.cleared == 2
        assert result.updated == 1
        assert result.appended == 1
        assert sorted(r["BatchOrderID"] for r in live_rows(records)) == ["B1|#1001", "B2|#1002"]

    def test_keys_match_item_pairs(self, reconciler, seeded, add_rows, records):
        """The table's keys are exactly the batched (batch, order) pairs"""
        add_rows("OrderItems", {"OrderName": "#1004", "PrintBatchID": "B2", "PrintUnits": 1})

        reconciler.reconcile()

        pairs = {
            f"{r['PrintBatchID']}|{r['OrderName']}" for r in records("OrderItems") if r["PrintBatchID"]
        }
        assert {r["BatchOrderID"] for r in live_rows(records)} == pairs

    def test_missing_column(self, reconciler, seeded, store):
        headers = [h for h in store.get_headers("BatchOrders") if h != "LastUpdatedAt"]
        store.create_table("BatchOrders", headers)

        with pytest.raises(ConfigurationError, match="LastUpdatedAt"):
            reconciler.reconcile()
