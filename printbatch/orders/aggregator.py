"""
Order Status Aggregator

Folds line item signals into one Orders row per order name and upserts
only what changed.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import structlog

from printbatch.config.settings import Settings
from printbatch.orders.status import (
    DerivedState,
    OrderAggregate,
    is_manual_or_final,
    status_label,
    status_rank,
)
from printbatch.storage.runs import write_contiguous_rows
from printbatch.storage.tabular import Matrix, TabularStore, open_table
from printbatch.transformation.values import cell_text, is_true, parse_date

logger = structlog.get_logger(__name__)


@dataclass
class OrderUpsertResult:
    touched_orders: int = 0
    updated_rows: int = 0
    appended_rows: int = 0


class OrderAggregator:
    """
    Derives order status from OrderItems and upserts the Orders table.

    Orders are only considered once every one of their line items is ready.
    Existing rows change monotonically: CreatedAt only moves earlier, the
    status only moves up the derived ranking and never replaces a manual or
    final status, and PackedAt/PackedBy are filled only while blank.

    Example:
        aggregator = OrderAggregator(store, settings)
        aggregator.derive_and_upsert(result.touched_order_names)  # incremental
        aggregator.derive_and_upsert()                             # full recompute
    """

    def __init__(self, store: TabularStore, settings: Settings):
        self.store = store
        self.settings = settings

    def aggregate(self, rows: Matrix, idx: Dict[str, Optional[int]], only: Optional[Set[str]] = None) -> Dict[str, OrderAggregate]:
        """Fold item rows per order name in ascending row order"""
        sums: Dict[str, OrderAggregate] = {}

        def present(row, key: str) -> bool:
            return idx[key] is not None and bool(cell_text(row[idx[key]]))

        for row in rows:
            order_name = cell_text(row[idx["order_name"]])
            if not order_name or (only is not None and order_name not in only):
                continue

            s = sums.get(order_name)
            if s is None:
                s = sums[order_name] = OrderAggregate(order_name=order_name)

            if not is_true(row[idx["ready"]]):
                s.all_ready = False

            created_at = parse_date(row[idx["created_at"]])
            if created_at and (s.earliest_created_at is None or created_at < s.earliest_created_at):
                s.earliest_created_at = created_at

            printed = present(row, "printed_at")
            packed = present(row, "packed_at")
            if present(row, "batch_id") or printed or packed:
                s.any_in_prod_signal = True
            if not printed:
                s.all_printed = False
            if not packed:
                s.all_packed = False

            if packed:
                packed_at = parse_date(row[idx["packed_at"]])
                if packed_at and (s.max_packed_at is None or packed_at > s.max_packed_at):
                    s.max_packed_at = packed_at

            if present(row, "packed_by"):
                s.last_packed_by = cell_text(row[idx["packed_by"]])

        return sums

    def derive_and_upsert(self, order_names: Optional[Iterable[str]] = None) -> OrderUpsertResult:
        """
        Re-aggregate orders and write changed or new Orders rows.

        Args:
            order_names: Orders to re-aggregate; None re-aggregates every order

        Returns:
            OrderUpsertResult
        """
        tables = self.settings.tables
        ci = self.settings.columns.order_items
        co = self.settings.columns.orders
        statuses = self.settings.status

        items = open_table(self.store, tables.order_items)
        orders = open_table(self.store, tables.orders)

        i_order, i_created, i_ready = items.require_all(ci.order_name, ci.created_at, ci.ready_for_orders)
        idx = {
            "order_name": i_order,
            "created_at": i_created,
            "ready": i_ready,
            "batch_id": items.optional(ci.print_batch_id),
            "printed_at": items.optional(ci.printed_at),
            "packed_at": items.optional(ci.packed_at),
            "packed_by": items.optional(ci.packed_by),
        }
        o_order, o_created, o_status = orders.require_all(co.order_name, co.created_at, co.status)
        o_packed_at = orders.optional(co.packed_at)
        o_packed_by = orders.optional(co.packed_by)

        only = None if order_names is None else {cell_text(n) for n in order_names if cell_text(n)}
        result = OrderUpsertResult()
        if only is not None and not only:
            return result

        sums = self.aggregate(items.read_data(), idx, only)
        ready = [s for s in sums.values() if s.all_ready]
        result.touched_orders = len(ready)
        if not ready:
            logger.info("No ready orders to upsert", requested=len(only) if only is not None else "all")
            return result

        values = orders.read_data()
        by_name: Dict[str, int] = {}
        for i, row in enumerate(values):
            name = cell_text(row[o_order])
            if name:
                by_name.setdefault(name, i)

        to_append: Matrix = []
        changed: List[int] = []

        for s in ready:
            state = s.derive()
            derived = status_label(state, statuses)
            is_packed = state == DerivedState.PACKED

            if s.order_name not in by_name:
                row = orders.blank_row()
                row[o_order] = s.order_name
                row[o_created] = s.earliest_created_at or ""
                row[o_status] = derived
                if is_packed and o_packed_at is not None:
                    row[o_packed_at] = s.max_packed_at or ""
                if is_packed and o_packed_by is not None:
                    row[o_packed_by] = s.last_packed_by
                to_append.append(row)
                continue

            i = by_name[s.order_name]
            row = values[i]
            row_changed = False

            existing_created = parse_date(row[o_created])
            if s.earliest_created_at and (existing_created is None or s.earliest_created_at < existing_created):
                row[o_created] = s.earliest_created_at
                row_changed = True

            current = cell_text(row[o_status])
            if not is_manual_or_final(current, statuses) and current != derived:
                current_rank = status_rank(current, statuses)
                if current_rank is None or int(state) > current_rank:
                    row[o_status] = derived
                    row_changed = True

            if is_packed:
                if o_packed_at is not None and not cell_text(row[o_packed_at]) and s.max_packed_at:
                    row[o_packed_at] = s.max_packed_at
                    row_changed = True
                if o_packed_by is not None and not cell_text(row[o_packed_by]) and s.last_packed_by:
                    row[o_packed_by] = s.last_packed_by
                    row_changed = True

            if row_changed:
                changed.append(i)

        write_contiguous_rows(self.store, orders.name, values, changed, orders.width)
        if to_append:
            self.store.append_rows(orders.name, to_append)

        result.updated_rows = len(changed)
        result.appended_rows = len(to_append)

        logger.info(
            "Orders upserted",
            touched=result.touched_orders,
            updated=result.updated_rows,
            appended=result.appended_rows,
            mode="full" if only is None else "incremental",
        )
        return result
