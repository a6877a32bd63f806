"""
Unit Tests - Line Item Enrichment
"""
from datetime import datetime

import pytest

from printbatch.config import Settings
from printbatch.config.settings import DeriveSettings
from printbatch.errors import ConfigurationError
from printbatch.quality import open_exception_log
from printbatch.storage import CsvTabularStore, InMemoryCheckpointStore, InMemoryTabularStore
from printbatch.storage.state import ORDER_ITEMS_CHECKPOINT_KEY
from printbatch.transformation.enrichers import MISSING_SKU, SKU_NOT_IN_MATRIX, ItemEnricher

CREATED = datetime(2024, 5, 9, 14, 0)


def item(order_name, sku, qty=1, **extra):
    row = {"CreatedAt": CREATED, "OrderName": order_name, "SKU": sku, "Qty": qty}
    row.update(extra)
    return row


@pytest.fixture
def enricher(store, test_settings, checkpoints, exception_log, clock):
    return ItemEnricher(store, test_settings, checkpoints, exception_log, clock)


class TestDerivation:
    """Tests for per-row derivation"""

    def test_catalog_sku(self, enricher, add_rows, records):
        """Qty 3 of a one-print SKU gives 3 units and a ready item"""
        add_rows("OrderItems", item("#1001", "B86", qty=3, PrintUnits=0))

        result = enricher.enrich()

        row = records("OrderItems")[0]
        assert row["PrintCategory"] == "8x6"
        assert row["PrintProfileKey"] == "B86:1"
        assert row["PrintUnits"] == 3
        assert row["ReadyForOrders"] is True
        assert result.changed == 1
        assert result.exceptions_logged == 0

    def test_sku_not_in_catalog(self, enricher, add_rows, records, exception_log):
        """Unknown SKUs get fallback values and one exception"""
        add_rows("OrderItems", item("#1001", "NOPE-1", qty=2, LineItemID="li-9"))

        result = enricher.enrich()

        row = records("OrderItems")[0]
        assert row["PrintCategory"] == "Unknown"
        assert row["PrintProfileKey"] == ""
        assert row["PrintUnits"] == 0
        assert row["ReadyForOrders"] is False

        assert result.exceptions_logged == 1
        issue = exception_log.issues[0]
        assert issue.type == SKU_NOT_IN_MATRIX
        assert issue.order_name == "#1001"
        assert issue.item_id == "li-9"
        assert issue.sku == "NOPE-1"

    def test_blank_sku(self, enricher, add_rows, exception_log):
        """Blank SKUs are logged as MISSING_SKU"""
        add_rows("OrderItems", item("#1001", ""))

        enricher.enrich()

        assert [i.type for i in exception_log.issues] == [MISSING_SKU]

    def test_multi_token_profile(self, enricher, add_rows, records):
        """Blank catalog category falls back to the first profile code"""
        add_rows("OrderItems", item("#1001", "COMBO", qty=2))

        enricher.enrich()

        row = records("OrderItems")[0]
        assert row["PrintCategory"] == "B86"
        assert row["PrintUnits"] == 6
        assert row["ReadyForOrders"] is True

    def test_non_print_mode(self, enricher, add_rows, records):
        """PrintMode NONE is ready with zero units and no profile key"""
        add_rows("OrderItems", item("#1001", "CARD", qty=4))

        enricher.enrich()

        row = records("OrderItems")[0]
        assert row["PrintCategory"] == "NONE"
        assert row["PrintProfileKey"] == ""
        assert row["PrintUnits"] == 0
        assert row["ReadyForOrders"] is True

    def test_manual_units_kept(self, enricher, add_rows, records):
        """A manually set unit count that differs from Qty survives"""
        add_rows("OrderItems", item("#1001", "B54-2", qty=2, PrintUnits=5))

        enricher.enrich()

        assert records("OrderItems")[0]["PrintUnits"] == 5

    def test_units_equal_to_qty_fixed(self, enricher, add_rows, records):
        """Units equal to Qty are replaced when the profile prints more"""
        add_rows("OrderItems", item("#1001", "B54-2", qty=2, PrintUnits=2))

        enricher.enrich()

        assert records("OrderItems")[0]["PrintUnits"] == 4

    def test_force_overwrite(self, enricher, add_rows, records):
        add_rows("OrderItems", item("#1001", "B54-2", qty=2, PrintUnits=5))

        enricher.enrich(force_overwrite=True)

        assert records("OrderItems")[0]["PrintUnits"] == 4

    def test_blankish_category_not_ready(self, store, test_settings, add_rows, records, checkpoints, clock):
        """A blankish catalog category keeps the item out of production"""
        store.append_rows("SKU_Matrix", [["ODD", "PRINT", "B86:1", "(blank)"]])
        add_rows("OrderItems", item("#1001", "ODD"))

        ItemEnricher(store, test_settings, checkpoints, None, clock).enrich()

        assert records("OrderItems")[0]["ReadyForOrders"] is False


class TestNormalization:
    """Tests for CreatedAt normalization"""

    def test_text_timestamp_parsed(self, enricher, add_rows, records):
        add_rows("OrderItems", item("#1001", "B86", CreatedAt="2024-05-01 10:15"))

        enricher.enrich()

        assert records("OrderItems")[0]["CreatedAt"] == datetime(2024, 5, 1, 10, 15)

    def test_unparseable_timestamp_left_alone(self, enricher, add_rows, records):
        """Bad timestamps never drop the row"""
        add_rows("OrderItems", item("#1001", "B86", CreatedAt="soon"))

        result = enricher.enrich()

        row = records("OrderItems")[0]
        assert row["CreatedAt"] == "soon"
        assert row["ReadyForOrders"] is True
        assert result.scanned == 1


class TestDigitalItems:
    """Tests for digital item removal"""

    def test_digital_rows_deleted(self, enricher, add_rows, records):
        add_rows(
            "OrderItems",
            item("#1001", "B86"),
            item("#1002", "PHOTO-BDD"),
            item("#1003", "PHOTO-BDD"),
            item("#1004", "B86"),
        )

        result = enricher.enrich()

        assert result.removed_digital == 2
        assert [r["OrderName"] for r in records("OrderItems")] == ["#1001", "#1004"]
        assert result.touched_order_names == {"#1001", "#1004"}
        assert result.new_checkpoint == 3

    def test_contiguous_deletes_grouped(self, enricher, add_rows, store):
        """Adjacent digital rows are removed in one delete"""
        add_rows("OrderItems", item("#1", "B86"), item("#2", "X-BDD"), item("#3", "Y-BDD"))

        enricher.enrich()

        deletes = [op for op in store.mutations("OrderItems") if op.op == "delete"]
        assert [(op.start_row, op.num_rows) for op in deletes] == [(3, 2)]


class TestIdempotence:
    """Tests for repeated runs"""

    def test_second_run_writes_nothing(self, enricher, add_rows, store, exception_log):
        """A rerun over unchanged data performs no writes and logs nothing"""
        add_rows(
            "OrderItems",
            item("#1001", "B86", qty=3, CreatedAt="2024-05-01 10:15"),
            item("#1002", "NOPE"),
            item("#1003", "CARD"),
        )

        enricher.enrich()
        store.clear_operations()
        logged = len(exception_log.issues)

        result = enricher.enrich()

        assert store.mutations("OrderItems") == []
        assert result.changed == 0
        assert result.exceptions_logged == 0
        assert len(exception_log.issues) == logged

    def test_ready_rows_short_circuit(self, enricher, add_rows, records, exception_log):
        """Ready rows with category and profile are never re-derived"""
        add_rows(
            "OrderItems",
            item("#1001", "NOPE", PrintCategory="Custom", PrintProfileKey="X:1", PrintUnits=9, ReadyForOrders="TRUE"),
        )

        result = enricher.enrich()

        row = records("OrderItems")[0]
        assert row["PrintCategory"] == "Custom"
        assert row["PrintUnits"] == 9
        assert result.changed == 0
        assert exception_log.issues == []

    def test_rerun_after_csv_reload_writes_nothing(self, store, test_settings, checkpoints, exception_log, clock, tmp_path):
        """Text timestamps already in stored form survive a save and reload untouched"""
        workbook = CsvTabularStore(tmp_path)
        for name in store.table_names():
            workbook.create_table(name, store.get_headers(name), store.snapshot(name))
        headers = workbook.get_headers("OrderItems")
        row = item("#1001", "B86", qty=2, CreatedAt="2024-05-09 14:00:00")
        workbook.append_rows("OrderItems", [[row.get(h, "") for h in headers]])

        first = ItemEnricher(workbook, test_settings, checkpoints, exception_log, clock).enrich()
        workbook.save()
        reloaded = CsvTabularStore(tmp_path).load()

        second = ItemEnricher(reloaded, test_settings, checkpoints, exception_log, clock).enrich()

        assert first.changed == 1
        assert second.scanned == 1
        assert second.changed == 0
        assert reloaded.mutations() == []

    def test_stored_form_timestamp_kept_as_text(self, enricher, add_rows, records):
        add_rows("OrderItems", item("#1001", "B86", CreatedAt="2024-05-09 14:00:00"))

        result = enricher.enrich()

        assert result.changed == 1
        assert records("OrderItems")[0]["CreatedAt"] == "2024-05-09 14:00:00"

    def test_column_written_once(self, enricher, add_rows, store):
        """Each changed column is one bulk write over the window"""
        add_rows("OrderItems", *[item(f"#{n}", "B86", qty=n) for n in range(1, 6)])

        enricher.enrich()

        writes = [op for op in store.mutations("OrderItems") if op.op == "write"]
        assert len(writes) == len({op.start_col for op in writes})
        assert all(op.num_rows == 5 and op.start_row == 2 for op in writes)


class TestCheckpoint:
    """Tests for the checkpointed scan window"""

    def test_window_uses_overlap(self, store, test_settings, add_rows, clock):
        add_rows("OrderItems", *[item(f"#{n}", "B86") for n in range(12)])
        enricher = ItemEnricher(store, test_settings, InMemoryCheckpointStore({ORDER_ITEMS_CHECKPOINT_KEY: 10}), None, clock)

        window = enricher.scan_window(overlap_rows=3)

        assert (window.start_row, window.end_row) == (7, 13)
        assert window.num_rows == 7

    def test_window_never_starts_on_headers(self, enricher, add_rows):
        add_rows("OrderItems", item("#1", "B86"))

        window = enricher.scan_window()

        assert window.start_row == 2

    def test_advances_to_last_row(self, enricher, add_rows, checkpoints):
        """The checkpoint ends on the last row"""
        add_rows("OrderItems", item("#1", "B86"), item("#2", "B86"))
        first = enricher.enrich()

        add_rows("OrderItems", item("#3", "B86"))
        second = enricher.enrich()

        assert first.new_checkpoint == 3
        assert second.new_checkpoint == 4
        assert checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY) == 4

    def test_rows_outside_window_skipped(self, store, test_settings, add_rows, records, clock):
        """With no overlap only rows after the checkpoint are processed"""
        add_rows("OrderItems", item("#1", "B86"), item("#2", "B86"), item("#3", "B86"))
        checkpoints = InMemoryCheckpointStore({ORDER_ITEMS_CHECKPOINT_KEY: 3})

        result = ItemEnricher(store, test_settings, checkpoints, None, clock).enrich(overlap_rows=0)

        ready = [r["ReadyForOrders"] for r in records("OrderItems")]
        assert ready == ["", True, True]
        assert result.touched_order_names == {"#2", "#3"}

    def test_checkpoint_past_end_pulled_back(self, store, test_settings, add_rows, records, clock):
        """After rows are removed by hand, rows appended later are still scanned"""
        add_rows("OrderItems", item("#1", "B86"), item("#2", "B86"))
        checkpoints = InMemoryCheckpointStore({ORDER_ITEMS_CHECKPOINT_KEY: 10})
        enricher = ItemEnricher(store, test_settings, checkpoints, None, clock)

        first = enricher.enrich(overlap_rows=0)
        add_rows("OrderItems", item("#3", "B86"))
        second = enricher.enrich(overlap_rows=0)

        assert first.scanned == 0
        assert first.new_checkpoint == 3
        assert second.touched_order_names == {"#2", "#3"}
        assert records("OrderItems")[2]["ReadyForOrders"] is True
        assert checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY) == 4

    def test_reset(self, enricher, checkpoints):
        checkpoints.set(ORDER_ITEMS_CHECKPOINT_KEY, 50)

        enricher.reset_checkpoint()

        assert checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY) == 1

    def test_empty_table(self, enricher, checkpoints):
        result = enricher.enrich()

        assert result.scanned == 0
        assert result.new_checkpoint == 1
        assert checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY) == 1


class TestExceptionLogging:
    """Tests for exception log integration"""

    def test_written_to_exceptions_table(self, store, test_settings, add_rows, records, checkpoints, clock):
        """Issues land in the Exceptions table with the run timestamp"""
        log = open_exception_log(store, "Exceptions", test_settings.columns.exceptions)
        add_rows("OrderItems", item("#1001", "NOPE", LineItemID="li-1"), item("#1002", "ALSO-NOPE"))

        ItemEnricher(store, test_settings, checkpoints, log, clock).enrich()

        logged = records("Exceptions")
        assert [r["Type"] for r in logged] == [SKU_NOT_IN_MATRIX, SKU_NOT_IN_MATRIX]
        assert logged[0]["LineItemID"] == "li-1"
        assert logged[0]["LoggedAt"] == clock()
        assert len([op for op in store.mutations("Exceptions") if op.op == "append"]) == 1

    def test_prefilled_fallback_row_logged_once(self, enricher, add_rows, exception_log):
        """A row already holding fallback values still gets exactly one entry"""
        add_rows("OrderItems", item("#1001", "NOPE", PrintCategory="Unknown", PrintUnits=0, ReadyForOrders=False))

        first = enricher.enrich()
        second = enricher.enrich()

        assert first.changed == 0
        assert (first.exceptions_logged, second.exceptions_logged) == (1, 0)
        assert [i.key for i in exception_log.issues] == [(SKU_NOT_IN_MATRIX, "#1001", "", "NOPE")]

    def test_existing_table_entry_not_repeated(self, store, test_settings, add_rows, records, checkpoints, clock):
        log = open_exception_log(store, "Exceptions", test_settings.columns.exceptions)
        add_rows("Exceptions", {"Type": SKU_NOT_IN_MATRIX, "OrderName": "#1001", "LineItemID": "li-1", "SKU": "NOPE"})
        add_rows("OrderItems", item("#1001", "NOPE", LineItemID="li-1"), item("#1002", "NOPE"))

        result = ItemEnricher(store, test_settings, checkpoints, log, clock).enrich()

        assert result.exceptions_logged == 1
        assert [r["OrderName"] for r in records("Exceptions")] == ["#1001", "#1002"]

    def test_logging_disabled(self, store, add_rows, checkpoints, exception_log, clock):
        settings = Settings(app_env="testing", derive=DeriveSettings(log_missing_sku=False))
        add_rows("OrderItems", item("#1001", "NOPE"))

        result = ItemEnricher(store, settings, checkpoints, exception_log, clock).enrich()

        assert result.exceptions_logged == 0
        assert exception_log.issues == []

    def test_no_exceptions_table(self, test_settings):
        store = InMemoryTabularStore()
        assert open_exception_log(store, "Exceptions", test_settings.columns.exceptions) is None


class TestConfiguration:
    """Tests for missing tables and columns"""

    def test_missing_column_fails_before_writes(self, test_settings, checkpoints):
        store = InMemoryTabularStore()
        store.create_table("OrderItems", ["CreatedAt", "OrderName", "SKU", "Qty"], [["", "#1", "B86", 1]])
        store.create_table("SKU_Matrix", ["SKU", "PrintMode", "PrintProfileKey", "PrintCategory"])

        with pytest.raises(ConfigurationError, match="PrintUnits"):
            ItemEnricher(store, test_settings, checkpoints).enrich()

        assert store.operations == []
        assert checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY) is None
