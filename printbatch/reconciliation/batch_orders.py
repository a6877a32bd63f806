"""
BatchOrders Reconciler

Keeps the BatchOrders join table equal to a deterministic function of
OrderItems, Batches and Orders: one row per (PrintBatchID, OrderName) pair
present in the line items, keyed by ``BatchID|OrderName``.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from printbatch.config.settings import Settings
from printbatch.storage.runs import clear_contiguous_rows, write_contiguous_rows
from printbatch.storage.tabular import Matrix, Row, TabularStore, open_table
from printbatch.transformation.values import cell_text, local_now, parse_date, to_int

logger = structlog.get_logger(__name__)


def batch_order_key(batch_id: str, order_name: str) -> str:
    return f"{batch_id}|{order_name}"


def cells_equivalent(a: Any, b: Any) -> bool:
    """Timestamps compare by instant, everything else by text"""
    if isinstance(a, (datetime, date)) or isinstance(b, (datetime, date)):
        return parse_date(a) == parse_date(b)
    return cell_text(a) == cell_text(b)


def rows_equivalent(a: Sequence[Any], b: Sequence[Any], ignore: Optional[int] = None) -> bool:
    for i in range(max(len(a), len(b))):
        if i == ignore:
            continue
        av = a[i] if i < len(a) else ""
        bv = b[i] if i < len(b) else ""
        if not cells_equivalent(av, bv):
            return False
    return True


@dataclass
class BatchOrdersResult:
    desired: int = 0
    updated: int = 0
    appended: int = 0
    cleared: int = 0


class BatchOrdersReconciler:
    """
    Diffs the desired BatchOrders rows against the existing ones by key.

    Equal rows (ignoring LastUpdatedAt) are left alone, unequal rows are
    overwritten in place, missing keys are appended in key order and stale
    keys are cleared without deleting their rows.
    """

    def __init__(self, store: TabularStore, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: local_now(settings.timezone))

    def reconcile(self) -> BatchOrdersResult:
        tables = self.settings.tables
        cols = self.settings.columns

        items = open_table(self.store, tables.order_items)
        batches = open_table(self.store, tables.batches)
        orders = open_table(self.store, tables.orders)
        join = open_table(self.store, tables.batch_orders)

        i_order, i_batch, i_units = items.require_all(
            cols.order_items.order_name, cols.order_items.print_batch_id, cols.order_items.print_units
        )
        b_id, b_name, b_rm = batches.require_all(
            cols.batches.batch_id, cols.batches.print_batch_name, cols.batches.rm_batch_number
        )
        o_order, o_created, o_status = orders.require_all(
            cols.orders.order_name, cols.orders.created_at, cols.orders.status
        )
        bo = cols.batch_orders
        j_id, j_batch, j_name, j_order, j_created, j_status, j_count, j_units, j_updated, j_rm = join.require_all(
            bo.batch_order_id,
            bo.batch_id,
            bo.print_batch_name,
            bo.order_name,
            bo.order_created_at,
            bo.order_status,
            bo.order_item_count,
            bo.print_units,
            bo.last_updated_at,
            bo.rm_batch_number,
        )

        batch_info: Dict[str, Tuple[str, str]] = {}
        for row in batches.read_data():
            batch_id = cell_text(row[b_id])
            if batch_id:
                batch_info[batch_id] = (cell_text(row[b_name]), cell_text(row[b_rm]))

        order_info: Dict[str, Tuple[Any, str]] = {}
        for row in orders.read_data():
            name = cell_text(row[o_order])
            if name:
                order_info[name] = (parse_date(row[o_created]) or "", cell_text(row[o_status]))

        agg: Dict[str, List] = {}
        for row in items.read_data():
            batch_id = cell_text(row[i_batch])
            order_name = cell_text(row[i_order])
            if not batch_id or not order_name:
                continue
            entry = agg.setdefault(batch_order_key(batch_id, order_name), [batch_id, order_name, 0, 0])
            entry[2] += 1
            entry[3] += to_int(row[i_units], 0)

        now = self.clock()
        desired: Dict[str, Row] = {}
        for key in sorted(agg):
            batch_id, order_name, item_count, units = agg[key]
            name, rm = batch_info.get(batch_id, ("", ""))
            created_at, status = order_info.get(order_name, ("", self.settings.status.new))

            row = join.blank_row()
            row[j_id] = key
            row[j_batch] = batch_id
            row[j_name] = name
            row[j_order] = order_name
            row[j_rm] = rm
            row[j_created] = created_at
            row[j_status] = status
            row[j_count] = item_count
            row[j_units] = units
            row[j_updated] = now
            desired[key] = row

        existing = join.read_data()
        existing_by_key: Dict[str, int] = {}
        stale: List[int] = []
        for i, row in enumerate(existing):
            key = cell_text(row[j_id])
            if not key:
                continue
            if key in existing_by_key or key not in desired:
                stale.append(i)
            else:
                existing_by_key[key] = i

        changed: List[int] = []
        to_append: Matrix = []
        for key, row in desired.items():
            i = existing_by_key.get(key)
            if i is None:
                to_append.append(row)
            elif not rows_equivalent(existing[i], row, ignore=j_updated):
                existing[i] = row
                changed.append(i)

        write_contiguous_rows(self.store, join.name, existing, changed, join.width)
        if to_append:
            self.store.append_rows(join.name, to_append)
        clear_contiguous_rows(self.store, join.name, stale)

        result = BatchOrdersResult(
            desired=len(desired), updated=len(changed), appended=len(to_append), cleared=len(stale)
        )
        logger.info(
            "BatchOrders reconciled",
            desired=result.desired,
            updated=result.updated,
            appended=result.appended,
            cleared=result.cleared,
        )
        return result
