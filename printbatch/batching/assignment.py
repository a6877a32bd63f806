"""
Batch Assignment Engine

Groups ready, unbatched line items into print batches.

Per run: Bucket -> Group -> Qualify-or-Outlier -> Split -> Ensure-Batch ->
Accumulate-Metrics -> Flush.

The Batches table is read once into an immutable BatchIndex. Everything the
run decides (new batches, metric increments for reused batches, item
assignments) accumulates in a PendingBatches structure that is merged and
written once at flush time.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from printbatch.batching.ids import BatchIdAllocator, DEFAULT_CODE
from printbatch.batching.naming import make_print_batch_name
from printbatch.config.settings import Settings
from printbatch.errors import ConfigurationError
from printbatch.storage.runs import write_contiguous_column
from printbatch.storage.tabular import Matrix, Row, TableHandle, TabularStore, open_table
from printbatch.transformation.catalog import primary_code
from printbatch.transformation.values import BlankishMatcher, cell_text, is_true, local_now, parse_date, to_int

logger = structlog.get_logger(__name__)

ReuseKey = Tuple[str, str, str]

OUTLIER_CATEGORIES = {"MIXED", "UNKNOWN"}


@dataclass
class EligibleItem:
    """An unbatched, ready line item; row_index is 0-based in the data block"""
    row_index: int
    order_name: str
    print_units: int
    profile_key: str
    category: str


@dataclass
class DateBucket:
    day: date
    candidates: List[EligibleItem] = field(default_factory=list)
    outliers: List[EligibleItem] = field(default_factory=list)


@dataclass
class MetricDelta:
    """Metric increments accumulated for one batch during a run"""
    units: int = 0
    line_items: int = 0
    orders: Set[str] = field(default_factory=set)


@dataclass
class BatchAssignmentResult:
    """Outcome of one batch assignment run"""
    new_batches: int = 0
    items_assigned: int = 0
    existing_batches_updated: int = 0
    new_batch_ids: List[str] = field(default_factory=list)


def reuse_key(day: date, batch_type: str, profile_key: str) -> ReuseKey:
    return (day.isoformat(), batch_type.upper(), profile_key)


def split_by_max_units(items: Iterable[EligibleItem], max_units: int) -> List[List[EligibleItem]]:
    """
    Greedily pack items, in order, into runs of at most max_units.

    A new run starts whenever the next item would exceed the cap; a single
    item larger than the cap gets a run of its own.
    """
    runs: List[List[EligibleItem]] = []
    current: List[EligibleItem] = []
    total = 0
    for item in items:
        if current and total + item.print_units > max_units:
            runs.append(current)
            current, total = [], 0
        current.append(item)
        total += item.print_units
    if current:
        runs.append(current)
    return runs


class BatchIndex:
    """
    Read-only view of the Batches table at the start of a run.

    Attributes:
        rows: data rows, index i is sheet row i + 2
        open_by_key: reuse key -> BatchID of the Open batch
        row_by_id: BatchID -> row index
        allocator: sequence counters seeded from existing IDs
    """

    def __init__(self, table: TableHandle, settings: Settings):
        cols = settings.columns.batches
        self.table = table
        self.i_id, self.i_date, self.i_type, self.i_key, self.i_cat, self.i_status = table.require_all(
            cols.batch_id, cols.batch_date, cols.batch_type, cols.print_profile_key, cols.print_category, cols.status
        )
        self.i_units = table.optional(cols.total_print_units)
        self.i_line_items = table.optional(cols.line_item_count)
        self.i_orders = table.optional(cols.order_count)

        self.rows: Matrix = table.read_data()
        self.open_by_key: Dict[ReuseKey, str] = {}
        self.row_by_id: Dict[str, int] = {}
        self.allocator = BatchIdAllocator()

        status_open = settings.batch.status_open
        for i, row in enumerate(self.rows):
            batch_id = cell_text(row[self.i_id])
            if not batch_id:
                continue

            batch_type = cell_text(row[self.i_type]).upper()
            profile_key = cell_text(row[self.i_key])
            batch_date = parse_date(row[self.i_date])
            day = batch_date.date() if batch_date else None

            if cell_text(row[self.i_status]) == status_open and day and batch_type and profile_key:
                self.open_by_key.setdefault(reuse_key(day, batch_type, profile_key), batch_id)

            self.row_by_id.setdefault(batch_id, i)
            self.allocator.observe(batch_id, day, batch_type, cell_text(row[self.i_cat]))

    def metric(self, batch_id: str, col: Optional[int]) -> int:
        if col is None or batch_id not in self.row_by_id:
            return 0
        return to_int(self.rows[self.row_by_id[batch_id]][col], 0)


class PendingBatches:
    """Decisions of the current run, merged into the store at flush"""

    def __init__(self):
        self.new_rows: Dict[str, Row] = {}
        self.new_by_key: Dict[ReuseKey, str] = {}
        self.deltas: Dict[str, MetricDelta] = {}
        self.assignments: Dict[int, str] = {}

    def add(self, batch_id: str, items: List[EligibleItem]) -> None:
        delta = self.deltas.setdefault(batch_id, MetricDelta())
        for item in items:
            delta.units += item.print_units
            delta.line_items += 1
            if item.order_name:
                delta.orders.add(item.order_name)
            self.assignments[item.row_index] = batch_id


class BatchAssigner:
    """
    Creates or reuses Open batches and assigns PrintBatchID to line items.

    Example:
        assigner = BatchAssigner(store, settings)
        result = assigner.assign_batches(include_today=True)
    """

    def __init__(self, store: TabularStore, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: local_now(settings.timezone))
        self.blankish = BlankishMatcher(settings.derive.blankish_values)

    # ---- phase 1: bucket

    def _bucket_items(
        self,
        rows: Matrix,
        idx: Dict[str, int],
        today: date,
        date_mode: str,
        lookback_days: int,
        full_days_only: bool,
    ) -> Dict[date, DateBucket]:
        none_category = self.settings.derive.none_category.upper()
        cutoff = datetime.combine(today, datetime.min.time()) - timedelta(days=lookback_days)
        buckets: Dict[date, DateBucket] = {}

        for r, row in enumerate(rows):
            if cell_text(row[idx["batch_id"]]):
                continue
            if not is_true(row[idx["ready"]]):
                continue

            category = cell_text(row[idx["category"]])
            if self.blankish(category) or category.upper() == none_category:
                continue

            if date_mode == "PRINT_DAY":
                day = today
            else:
                created_at = parse_date(row[idx["created_at"]])
                if created_at is None or created_at < cutoff:
                    continue
                day = created_at.date()

            if full_days_only and day == today:
                continue

            item = EligibleItem(
                row_index=r,
                order_name=cell_text(row[idx["order_name"]]),
                print_units=to_int(row[idx["units"]], 0),
                profile_key=cell_text(row[idx["profile_key"]]),
                category=category,
            )
            bucket = buckets.setdefault(day, DateBucket(day=day))
            is_outlier = (
                category.upper() in OUTLIER_CATEGORIES or not item.profile_key or item.print_units <= 0
            )
            (bucket.outliers if is_outlier else bucket.candidates).append(item)

        return buckets

    # ---- phase 2: ensure batch

    def _new_batch_row(self, index: BatchIndex, batch_id: str, day: date, batch_type: str, profile_key: str, category: str) -> Row:
        cols = self.settings.columns.batches
        table = index.table
        row = table.blank_row()

        def put(header: str, value) -> None:
            i = table.optional(header)
            if i is not None:
                row[i] = value

        put(cols.batch_id, batch_id)
        put(cols.batch_date, datetime.combine(day, datetime.min.time()))
        put(cols.batch_type, batch_type.upper())
        put(cols.print_profile_key, profile_key)
        put(cols.print_category, category)
        put(cols.status, self.settings.batch.status_open)
        put(cols.created_at, self.clock())
        put(cols.print_batch_name, make_print_batch_name(day, category, batch_id, "", self.settings.batch.category_labels))
        put(cols.total_print_units, 0)
        put(cols.line_item_count, 0)
        put(cols.order_count, 0)
        return row

    def _ensure_open_batch(
        self,
        index: BatchIndex,
        pending: PendingBatches,
        day: date,
        batch_type: str,
        profile_key: str,
        category: str,
    ) -> str:
        key = reuse_key(day, batch_type, profile_key)
        existing = index.open_by_key.get(key) or pending.new_by_key.get(key)
        if existing:
            return existing

        batch_id = index.allocator.allocate(day, batch_type, category or DEFAULT_CODE)
        pending.new_rows[batch_id] = self._new_batch_row(index, batch_id, day, batch_type, profile_key, category)
        pending.new_by_key[key] = batch_id
        logger.debug("Batch created", batch_id=batch_id, profile_key=profile_key, batch_type=batch_type)
        return batch_id

    # ---- phase 3: flush

    def _flush(
        self,
        items: TableHandle,
        i_batch: int,
        item_rows: Matrix,
        index: BatchIndex,
        pending: PendingBatches,
        orders_by_batch: Dict[str, Set[str]],
    ) -> BatchAssignmentResult:
        result = BatchAssignmentResult()

        def order_increment(batch_id: str, delta: MetricDelta) -> int:
            return len(delta.orders - orders_by_batch.get(batch_id, set()))

        # New batches: metrics come straight from their deltas
        new_rows = []
        for batch_id, row in pending.new_rows.items():
            delta = pending.deltas.get(batch_id, MetricDelta())
            for col, value in (
                (index.i_units, delta.units),
                (index.i_line_items, delta.line_items),
                (index.i_orders, order_increment(batch_id, delta)),
            ):
                if col is not None:
                    row[col] = value
            new_rows.append(row)
            result.new_batch_ids.append(batch_id)

        if new_rows:
            self.store.append_rows(index.table.name, new_rows)
        result.new_batches = len(new_rows)

        # Reused batches: read-modify-write the metric columns once
        touched: List[int] = []
        merged = [list(r) for r in index.rows]
        for batch_id, delta in pending.deltas.items():
            if batch_id in pending.new_rows or batch_id not in index.row_by_id:
                continue
            i = index.row_by_id[batch_id]
            for col, inc in (
                (index.i_units, delta.units),
                (index.i_line_items, delta.line_items),
                (index.i_orders, order_increment(batch_id, delta)),
            ):
                if col is not None:
                    merged[i][col] = index.metric(batch_id, col) + inc
            touched.append(i)

        for col in (index.i_units, index.i_line_items, index.i_orders):
            if col is not None and touched:
                write_contiguous_column(self.store, index.table.name, merged, touched, col)
        result.existing_batches_updated = len(touched)

        # PrintBatchID for the whole table in one column write
        if pending.assignments:
            column = [[row[i_batch]] for row in item_rows]
            for r, batch_id in pending.assignments.items():
                column[r] = [batch_id]
            self.store.write_rows(items.name, 2, column, start_col=i_batch + 1)
        result.items_assigned = len(pending.assignments)

        return result

    # ---- run

    def assign_batches(
        self,
        include_today: bool = False,
        date_mode: Optional[str] = None,
        lookback_days: Optional[int] = None,
    ) -> BatchAssignmentResult:
        """
        Assign every eligible line item to a batch.

        Args:
            include_today: Batch today's bucket even when full_days_only is set
            date_mode: ORDER_DATE or PRINT_DAY (default from settings)
            lookback_days: Ignore items created before this many days ago

        Returns:
            BatchAssignmentResult
        """
        cfg = self.settings.batch
        cols = self.settings.columns.order_items

        mode = (date_mode or cfg.date_mode).upper()
        if mode not in ("ORDER_DATE", "PRINT_DAY"):
            raise ConfigurationError(f"Unknown batch date mode: {mode}")
        lookback = cfg.lookback_days if lookback_days is None else lookback_days
        full_days_only = cfg.full_days_only and not include_today

        items = open_table(self.store, self.settings.tables.order_items)
        idx = dict(
            zip(
                ("created_at", "order_name", "units", "category", "batch_id", "ready", "profile_key"),
                items.require_all(
                    cols.created_at,
                    cols.order_name,
                    cols.print_units,
                    cols.print_category,
                    cols.print_batch_id,
                    cols.ready_for_orders,
                    cols.print_profile_key,
                ),
            )
        )
        index = BatchIndex(open_table(self.store, self.settings.tables.batches), self.settings)

        item_rows = items.read_data()
        if not item_rows:
            logger.info("No order items to batch", table=items.name)
            return BatchAssignmentResult()

        orders_by_batch: Dict[str, Set[str]] = {}
        for row in item_rows:
            batch_id = cell_text(row[idx["batch_id"]])
            if batch_id:
                orders_by_batch.setdefault(batch_id, set()).add(cell_text(row[idx["order_name"]]))

        today = self.clock().date()
        buckets = self._bucket_items(item_rows, idx, today, mode, lookback, full_days_only)
        if not buckets:
            logger.info("No eligible unbatched items", date_mode=mode, full_days_only=full_days_only)
            return BatchAssignmentResult()

        pending = PendingBatches()
        for day in sorted(buckets):
            bucket = buckets[day]

            groups: Dict[str, List[EligibleItem]] = {}
            for item in bucket.candidates:
                groups.setdefault(item.profile_key, []).append(item)

            for profile_key, group in groups.items():
                total_units = sum(item.print_units for item in group)
                if len(group) < cfg.min_lineitems_for_auto or total_units < cfg.min_printunits_for_auto:
                    bucket.outliers.extend(group)
                    continue

                for run in split_by_max_units(group, cfg.max_printunits_per_batch):
                    batch_id = self._ensure_open_batch(
                        index, pending, day, cfg.type_auto, profile_key, primary_code(profile_key) or DEFAULT_CODE
                    )
                    pending.add(batch_id, run)

            if cfg.create_misc_per_date and bucket.outliers:
                batch_id = self._ensure_open_batch(
                    index, pending, day, cfg.type_misc, cfg.misc_profile_key, cfg.misc_category
                )
                pending.add(batch_id, bucket.outliers)

        result = self._flush(items, idx["batch_id"], item_rows, index, pending, orders_by_batch)

        logger.info(
            "Batch assignment complete",
            new_batches=result.new_batches,
            items_assigned=result.items_assigned,
            existing_batches_updated=result.existing_batches_updated,
            buckets=len(buckets),
        )
        return result
