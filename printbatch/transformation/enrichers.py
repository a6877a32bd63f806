"""
Line Item Enrichment Module

Checkpointed normalization and derivation pass over the OrderItems table.
Includes:
- CreatedAt normalization (text timestamps parsed in place)
- Digital item removal (SKUs with the digital suffix are deleted)
- PrintCategory / PrintProfileKey / PrintUnits / ReadyForOrders derivation
- Exception logging for missing or unknown SKUs, once per (type, order, item, SKU)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from printbatch.config.settings import Settings
from printbatch.errors import DataQualityIssue
from printbatch.quality.exception_log import ExceptionLog
from printbatch.storage.runs import delete_rows_bottom_up
from printbatch.storage.state import ORDER_ITEMS_CHECKPOINT_KEY, CheckpointStore
from printbatch.storage.tabular import TabularStore, open_table
from printbatch.transformation.catalog import CatalogEntry, CatalogIndex, derive_category_fallback
from printbatch.transformation.values import (
    BlankishMatcher,
    Flag,
    cell_signature,
    cell_text,
    is_true,
    local_now,
    parse_date,
    parse_flag,
    to_int,
)

logger = structlog.get_logger(__name__)

MISSING_SKU = "MISSING_SKU"
SKU_NOT_IN_MATRIX = "SKU_NOT_IN_MATRIX"


@dataclass
class ScanWindow:
    """Inclusive absolute row range to process"""
    start_row: int
    end_row: int

    @property
    def num_rows(self) -> int:
        return max(0, self.end_row - self.start_row + 1)


@dataclass
class EnrichmentResult:
    """Outcome of one enrichment run"""
    scanned: int = 0
    changed: int = 0
    exceptions_logged: int = 0
    removed_digital: int = 0
    new_checkpoint: int = 1
    touched_order_names: Set[str] = field(default_factory=set)


@dataclass
class _Derived:
    category: Any
    profile_key: Any
    units: int
    ready: bool
    issue_type: Optional[str] = None
    issue_message: str = ""


class ItemEnricher:
    """
    Enriches OrderItems rows from the SKU catalog.

    Only rows inside the scan window are read: from the stored checkpoint
    minus the overlap up to the last row. Each derived column is written
    with one bulk write over the window, and only when some row in the
    window actually changed.

    Example:
        enricher = ItemEnricher(store, settings, checkpoints, exception_log)
        result = enricher.enrich()
    """

    def __init__(
        self,
        store: TabularStore,
        settings: Settings,
        checkpoints: CheckpointStore,
        exception_log: Optional[ExceptionLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings
        self.checkpoints = checkpoints
        self.exception_log = exception_log
        self.clock = clock or (lambda: local_now(settings.timezone))
        self.blankish = BlankishMatcher(settings.derive.blankish_values)

    # ---- checkpoint

    def _checkpoint(self) -> int:
        saved = self.checkpoints.get(ORDER_ITEMS_CHECKPOINT_KEY)
        return saved if saved is not None else 1

    def _set_checkpoint(self, row: int) -> int:
        value = max(1, int(row))
        self.checkpoints.set(ORDER_ITEMS_CHECKPOINT_KEY, value)
        return value

    def reset_checkpoint(self) -> None:
        """Force the next run to rescan the whole table"""
        self._set_checkpoint(1)
        logger.info("OrderItems checkpoint reset", key=ORDER_ITEMS_CHECKPOINT_KEY)

    def scan_window(self, overlap_rows: Optional[int] = None) -> ScanWindow:
        """Rows [max(2, checkpoint - overlap), last_row]"""
        overlap = self.settings.perf.checkpoint_overlap if overlap_rows is None else overlap_rows
        overlap = max(0, int(overlap))
        last_row = self.store.last_row(self.settings.tables.order_items)
        return ScanWindow(start_row=max(2, self._checkpoint() - overlap), end_row=last_row)

    # ---- derivation

    def _fallback(self, issue_type: str, message: str) -> _Derived:
        derive = self.settings.derive
        return _Derived(
            category=derive.missing_sku_category or "Unknown",
            profile_key="",
            units=derive.missing_sku_units,
            ready=False,
            issue_type=issue_type,
            issue_message=message,
        )

    def _derive(self, entry: CatalogEntry, qty: int, current_units_cell: Any, overwrite: bool) -> _Derived:
        derive = self.settings.derive
        category = entry.category or derive_category_fallback(
            entry.mode, entry.profile_key, derive.none_category, derive.missing_sku_category
        )
        profile_key = entry.profile_key

        desired_units = qty * entry.units_per_item
        current_units = to_int(current_units_cell, 0)

        # Heuristic protecting manually adjusted unit counts
        should_fix = current_units <= 0 or (current_units == qty and desired_units != qty)
        units = desired_units if (overwrite or should_fix) else current_units

        category_ok = not self.blankish(category)
        key_ok = entry.is_non_print or bool(profile_key)
        units_ok = entry.is_non_print or units > 0 or desired_units > 0

        return _Derived(category=category, profile_key=profile_key, units=units, ready=category_ok and key_ok and units_ok)

    def _is_digital(self, sku: str) -> bool:
        suffix = self.settings.derive.digital_sku_suffix.upper()
        return bool(sku) and bool(suffix) and sku.upper().endswith(suffix)

    def _unlogged(self, issues: List[DataQualityIssue]) -> List[DataQualityIssue]:
        """Issues whose (type, order, item, SKU) is not in the log yet"""
        known = {tuple(cell_text(v) for v in key) for key in self.exception_log.known_keys()}
        return [issue for issue in issues if issue.key not in known]

    # ---- run

    def enrich(self, overlap_rows: Optional[int] = None, force_overwrite: Optional[bool] = None) -> EnrichmentResult:
        """
        Run one enrichment pass over the scan window.

        Args:
            overlap_rows: Rows to rescan before the checkpoint (default from settings)
            force_overwrite: Always overwrite PrintUnits (default from settings)

        Returns:
            EnrichmentResult with counts and the new checkpoint
        """
        tables = self.settings.tables
        cols = self.settings.columns.order_items
        overwrite = self.settings.derive.overwrite_existing if force_overwrite is None else force_overwrite

        items = open_table(self.store, tables.order_items)
        i_created, i_order, i_sku, i_qty, i_units, i_ready, i_key, i_cat = items.require_all(
            cols.created_at,
            cols.order_name,
            cols.sku,
            cols.qty,
            cols.print_units,
            cols.ready_for_orders,
            cols.print_profile_key,
            cols.print_category,
        )
        i_line_item = items.optional(cols.line_item_id)
        catalog = CatalogIndex.from_table(open_table(self.store, tables.sku_matrix), self.settings.columns.sku_matrix)

        window = self.scan_window(overlap_rows)
        result = EnrichmentResult(new_checkpoint=window.end_row)

        if window.end_row < 2:
            result.new_checkpoint = self._set_checkpoint(1)
            return result
        if window.num_rows == 0:
            # Checkpoint past the table end: rows were removed by hand
            result.new_checkpoint = self._set_checkpoint(window.end_row)
            return result

        rows = self.store.read_rows(items.name, window.start_row, window.num_rows)
        out: Dict[int, List[Any]] = {
            col: [row[col] for row in rows] for col in (i_created, i_cat, i_key, i_units, i_ready)
        }
        dirty_cols: Set[int] = set()
        rows_to_delete: List[int] = []
        issues: List[DataQualityIssue] = []

        def put(col: int, r: int, value: Any, differs: bool) -> bool:
            if differs:
                out[col][r] = value
                dirty_cols.add(col)
            return differs

        for r, row in enumerate(rows):
            sku = cell_text(row[i_sku])
            order_name = cell_text(row[i_order])

            if self._is_digital(sku):
                rows_to_delete.append(window.start_row + r)
                continue

            if order_name:
                result.touched_order_names.add(order_name)

            row_changed = False
            created = row[i_created]
            if not isinstance(created, datetime):
                parsed = parse_date(created)
                if parsed is not None:
                    # Text already in the stored timestamp form is left alone
                    row_changed = put(i_created, r, parsed, cell_signature(parsed) != cell_signature(created))

            if is_true(row[i_ready]) and not self.blankish(row[i_cat]) and not self.blankish(row[i_key]):
                result.changed += int(row_changed)
                continue

            qty = to_int(row[i_qty], 0)
            entry = catalog.get(sku) if sku else None
            if not sku:
                derived = self._fallback(
                    MISSING_SKU, "SKU is blank; applied fallback values and set ReadyForOrders = FALSE."
                )
            elif entry is None:
                derived = self._fallback(
                    SKU_NOT_IN_MATRIX,
                    "SKU not found in SKU_Matrix; applied fallback values and set ReadyForOrders = FALSE.",
                )
            else:
                derived = self._derive(entry, qty, row[i_units], overwrite)

            ready_flag = Flag.TRUE if derived.ready else Flag.FALSE
            fields_changed = False
            fields_changed |= put(i_cat, r, derived.category, cell_text(row[i_cat]) != cell_text(derived.category))
            fields_changed |= put(i_key, r, derived.profile_key, cell_text(row[i_key]) != cell_text(derived.profile_key))
            fields_changed |= put(i_units, r, derived.units, cell_text(row[i_units]) != str(derived.units))
            fields_changed |= put(i_ready, r, derived.ready, parse_flag(row[i_ready]) is not ready_flag)

            if fields_changed or row_changed:
                result.changed += 1

            if derived.issue_type:
                issues.append(
                    DataQualityIssue(
                        type=derived.issue_type,
                        order_name=order_name,
                        item_id=cell_text(row[i_line_item]) if i_line_item is not None else "",
                        sku=sku,
                        message=derived.issue_message,
                        logged_at=self.clock(),
                    )
                )

        # One bulk write per changed column across the whole window
        for col in sorted(dirty_cols):
            self.store.write_rows(items.name, window.start_row, [[v] for v in out[col]], start_col=col + 1)

        if issues and self.settings.derive.log_missing_sku and self.exception_log is not None:
            result.exceptions_logged = self.exception_log.extend(self._unlogged(issues))

        result.removed_digital = delete_rows_bottom_up(self.store, items.name, rows_to_delete)
        result.scanned = window.num_rows
        result.new_checkpoint = self._set_checkpoint(self.store.last_row(items.name))

        logger.info(
            "Order items enriched",
            scanned=result.scanned,
            changed=result.changed,
            exceptions=result.exceptions_logged,
            removed_digital=result.removed_digital,
            checkpoint=result.new_checkpoint,
            columns_written=len(dirty_cols),
        )

        return result
