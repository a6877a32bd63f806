"""
Shipment Reconciler

Imports Royal Mail manifests and mirrors carrier state through the
workbook:

Manifest -> Shipments (upsert) -> Orders -> BatchOrders -> Batches shorthand

Only orders named in the manifest are touched downstream, and every stage
writes only rows whose content actually changed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

import structlog

from printbatch.config.settings import Settings
from printbatch.errors import ConfigurationError
from printbatch.ingestion.manifests import ManifestSource, ManifestTable
from printbatch.storage.runs import write_contiguous_rows
from printbatch.storage.state import ProcessedFileStore
from printbatch.storage.tabular import Matrix, TabularStore, open_table
from printbatch.transformation.values import (
    cell_text,
    local_now,
    merge_newline_list,
    normalize_status,
    parse_date,
    row_signature,
    split_newline_list,
    tracking_url,
)

logger = structlog.get_logger(__name__)

# Royal Mail export headers, matched verbatim
MANIFEST_ORDER = "Channel reference"
MANIFEST_POSTCODE = "Postcode"
MANIFEST_BATCH = "Batch number"
MANIFEST_MANIFEST_NO = "Manifest number"
MANIFEST_DESPATCH = "Despatch date"
MANIFEST_TRACKING = "Tracking number"
MANIFEST_TRACKING_STATUS = "Tracking status"
MANIFEST_SERVICE = "Shipping service"
MANIFEST_PACKAGE_SIZE = "Package size"
MANIFEST_WEIGHT = "Weight (kg)"

REQUIRED_MANIFEST_HEADERS = [
    MANIFEST_ORDER,
    MANIFEST_POSTCODE,
    MANIFEST_BATCH,
    MANIFEST_MANIFEST_NO,
    MANIFEST_DESPATCH,
    MANIFEST_TRACKING,
    MANIFEST_TRACKING_STATUS,
]


def shipment_key(order_name: str, tracking_number: str) -> str:
    return f"{order_name}|{tracking_number}"


def batch_shorthand(rm_numbers: Set[str]) -> Optional[str]:
    """Single number verbatim, several as MULTI (n), none as None"""
    if not rm_numbers:
        return None
    if len(rm_numbers) == 1:
        return next(iter(rm_numbers))
    return f"MULTI ({len(rm_numbers)})"


@dataclass
class ShipmentUpsertResult:
    appended: int = 0
    updated: int = 0
    touched_orders: List[str] = field(default_factory=list)


@dataclass
class ManifestImportResult:
    """Outcome of importing one manifest file"""
    source_file_name: str = ""
    new_shipments: int = 0
    updated_shipments: int = 0
    touched_orders: int = 0
    orders_updated: int = 0
    batch_orders_updated: int = 0
    batches_updated: int = 0


@dataclass
class _OrderShipments:
    tracking: Set[str] = field(default_factory=set)
    manifests: Set[str] = field(default_factory=set)
    batches: Set[str] = field(default_factory=set)
    postcodes: Set[str] = field(default_factory=set)
    statuses: Set[str] = field(default_factory=set)
    count: int = 0


class ShipmentReconciler:
    """
    Upserts shipments keyed by ``OrderName|TrackingNumber`` and mirrors
    them into Orders, BatchOrders and Batches.

    Example:
        reconciler = ShipmentReconciler(store, settings)
        result = reconciler.import_manifest(table, "manifest-2024-05-01.xlsx")
    """

    def __init__(self, store: TabularStore, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: local_now(settings.timezone))

    # ---- validation

    @staticmethod
    def check_manifest_headers(table: ManifestTable) -> None:
        missing = [h for h in REQUIRED_MANIFEST_HEADERS if table.index(h) is None]
        if missing:
            raise ConfigurationError("RM export missing columns: " + ", ".join(missing))

    def check_tables(self) -> None:
        """Resolve every table and column the import writes to, before any write"""
        t = self.settings.tables
        c = self.settings.columns
        s = c.shipments
        open_table(self.store, t.shipments).require_all(
            s.shipment_id, s.order_name, s.postcode, s.rm_tracking_number, s.tracking_status,
            s.rm_manifest_no, s.rm_batch_number, s.despatched_at, s.shipping_service,
            s.package_size, s.weight_kg, s.imported_at, s.source_file_name,
        )
        open_table(self.store, t.orders).require_all(
            c.orders.order_name, c.orders.status, c.orders.postcode, c.orders.rm_batch_number,
            c.orders.rm_tracking_number, c.orders.rm_manifest_no,
        )
        open_table(self.store, t.batch_orders).require_all(
            c.batch_orders.order_name, c.batch_orders.batch_id, c.batch_orders.order_status,
            c.batch_orders.rm_batch_number,
        )
        open_table(self.store, t.batches).require_all(c.batches.batch_id, c.batches.rm_batch_number)

    # ---- stages

    def upsert_shipments(self, manifest: ManifestTable, source_file_name: str) -> ShipmentUpsertResult:
        """Insert or update one Shipments row per distinct (order, tracking) pair in the file"""
        s = self.settings.columns.shipments
        shipments = open_table(self.store, self.settings.tables.shipments)
        (
            i_id, i_order, i_postcode, i_tracking, i_status, i_manifest, i_batch,
            i_despatch, i_service, i_size, i_weight, i_imported, i_source,
        ) = shipments.require_all(
            s.shipment_id, s.order_name, s.postcode, s.rm_tracking_number, s.tracking_status,
            s.rm_manifest_no, s.rm_batch_number, s.despatched_at, s.shipping_service,
            s.package_size, s.weight_kg, s.imported_at, s.source_file_name,
        )

        m = {h: manifest.index(h) for h in REQUIRED_MANIFEST_HEADERS + [MANIFEST_SERVICE, MANIFEST_PACKAGE_SIZE, MANIFEST_WEIGHT]}

        def get(row, header: str):
            i = m[header]
            return row[i] if i is not None and i < len(row) else ""

        existing = shipments.read_data()
        by_id: Dict[str, int] = {}
        for i, row in enumerate(existing):
            key = cell_text(row[i_id])
            if key:
                by_id.setdefault(key, i)

        now = self.clock()
        result = ShipmentUpsertResult()
        seen: Set[str] = set()
        touched: Dict[str, None] = {}
        changed: List[int] = []
        to_append: Matrix = []

        for record in manifest.rows:
            order_name = cell_text(get(record, MANIFEST_ORDER))
            tracking = cell_text(get(record, MANIFEST_TRACKING))
            if not order_name or not tracking:
                continue

            key = shipment_key(order_name, tracking)
            if key in seen:
                continue
            seen.add(key)
            touched[order_name] = None

            i = by_id.get(key)
            row = list(existing[i]) if i is not None else shipments.blank_row()
            if i is None:
                row[i_id] = key
            row[i_order] = order_name
            row[i_postcode] = cell_text(get(record, MANIFEST_POSTCODE))
            row[i_tracking] = tracking
            row[i_status] = cell_text(get(record, MANIFEST_TRACKING_STATUS))
            row[i_manifest] = cell_text(get(record, MANIFEST_MANIFEST_NO))
            row[i_batch] = cell_text(get(record, MANIFEST_BATCH))
            row[i_despatch] = parse_date(get(record, MANIFEST_DESPATCH)) or ""
            row[i_service] = cell_text(get(record, MANIFEST_SERVICE))
            row[i_size] = cell_text(get(record, MANIFEST_PACKAGE_SIZE))
            row[i_weight] = get(record, MANIFEST_WEIGHT)
            row[i_source] = source_file_name

            if i is None:
                row[i_imported] = now
                to_append.append(row)
                continue

            before = list(existing[i])
            before[i_imported] = row[i_imported]
            if row_signature(before) != row_signature(row):
                row[i_imported] = now
                existing[i] = row
                changed.append(i)

        write_contiguous_rows(self.store, shipments.name, existing, changed, shipments.width)
        if to_append:
            self.store.append_rows(shipments.name, to_append)

        result.appended = len(to_append)
        result.updated = len(changed)
        result.touched_orders = list(touched)
        logger.info(
            "Shipments upserted",
            source_file=source_file_name,
            appended=result.appended,
            updated=result.updated,
            orders=len(result.touched_orders),
        )
        return result

    def mirror_to_orders(self, order_names: Iterable[str]) -> int:
        """Merge shipment data into Orders rows of the given orders"""
        touched = {cell_text(n) for n in order_names if cell_text(n)}
        if not touched:
            return 0

        statuses = self.settings.status
        rm = self.settings.royal_mail
        cs = self.settings.columns.shipments
        co = self.settings.columns.orders

        shipments = open_table(self.store, self.settings.tables.shipments)
        s_order, s_postcode, s_batch, s_tracking, s_manifest, s_status = shipments.require_all(
            cs.order_name, cs.postcode, cs.rm_batch_number, cs.rm_tracking_number, cs.rm_manifest_no, cs.tracking_status
        )
        orders = open_table(self.store, self.settings.tables.orders)
        o_order, o_status, o_postcode, o_batch, o_tracking, o_manifest = orders.require_all(
            co.order_name, co.status, co.postcode, co.rm_batch_number, co.rm_tracking_number, co.rm_manifest_no
        )

        agg: Dict[str, _OrderShipments] = {}
        for row in shipments.read_data():
            order_name = cell_text(row[s_order])
            if order_name not in touched:
                continue
            a = agg.setdefault(order_name, _OrderShipments())
            for target, value in (
                (a.tracking, cell_text(row[s_tracking])),
                (a.manifests, cell_text(row[s_manifest])),
                (a.batches, cell_text(row[s_batch])),
                (a.postcodes, cell_text(row[s_postcode])),
                (a.statuses, normalize_status(row[s_status])),
            ):
                if value:
                    target.add(value)
            a.count += 1

        delivered = normalize_status(rm.tracking_status_delivered)
        values = orders.read_data()
        changed: List[int] = []

        for i, row in enumerate(values):
            order_name = cell_text(row[o_order])
            a = agg.get(order_name)
            if a is None:
                continue

            before = row_signature(row)
            tracks = "\n".join(tracking_url(t, rm.tracking_url_prefix) for t in sorted(a.tracking))
            row[o_tracking] = merge_newline_list(row[o_tracking], tracks)
            row[o_manifest] = merge_newline_list(row[o_manifest], "\n".join(sorted(a.manifests)))
            row[o_batch] = merge_newline_list(row[o_batch], "\n".join(sorted(a.batches)))

            if a.count and a.postcodes:
                row[o_postcode] = sorted(a.postcodes)[0]

            if cell_text(row[o_status]) != statuses.hold and a.count:
                all_delivered = bool(a.statuses) and all(s == delivered for s in a.statuses)
                row[o_status] = statuses.delivered if all_delivered else statuses.despatched

            if row_signature(row) != before:
                changed.append(i)

        write_contiguous_rows(self.store, orders.name, values, changed, orders.width)
        logger.info("Shipments mirrored to orders", touched=len(touched), updated=len(changed))
        return len(changed)

    def mirror_to_batch_orders(self, order_names: Iterable[str]) -> int:
        """Copy order status and RM batch numbers into matching BatchOrders rows"""
        touched = {cell_text(n) for n in order_names if cell_text(n)}
        if not touched:
            return 0

        co = self.settings.columns.orders
        cb = self.settings.columns.batch_orders
        orders = open_table(self.store, self.settings.tables.orders)
        o_order, o_status, o_batch = orders.require_all(co.order_name, co.status, co.rm_batch_number)
        join = open_table(self.store, self.settings.tables.batch_orders)
        j_order, j_status, j_batch = join.require_all(cb.order_name, cb.order_status, cb.rm_batch_number)

        info: Dict[str, tuple] = {}
        for row in orders.read_data():
            order_name = cell_text(row[o_order])
            if order_name in touched:
                info[order_name] = (cell_text(row[o_status]), cell_text(row[o_batch]))
        if not info:
            return 0

        values = join.read_data()
        changed: List[int] = []
        for i, row in enumerate(values):
            order_info = info.get(cell_text(row[j_order]))
            if order_info is None:
                continue
            before = row_signature(row)
            row[j_status], row[j_batch] = order_info
            if row_signature(row) != before:
                changed.append(i)

        write_contiguous_rows(self.store, join.name, values, changed, join.width)
        logger.info("Orders mirrored to batch orders", updated=len(changed))
        return len(changed)

    def update_batch_shorthand(self, order_names: Iterable[str]) -> int:
        """
        Refresh Batches.RoyalMailBatchNumber for batches containing the given orders.

        RM numbers are collected across every BatchOrders row of each affected
        batch. A batch with no RM number keeps its current value.
        """
        touched = {cell_text(n) for n in order_names if cell_text(n)}
        if not touched:
            return 0

        cj = self.settings.columns.batch_orders
        cb = self.settings.columns.batches
        join = open_table(self.store, self.settings.tables.batch_orders)
        j_order, j_batch, j_rm = join.require_all(cj.order_name, cj.batch_id, cj.rm_batch_number)
        batches = open_table(self.store, self.settings.tables.batches)
        b_id, b_rm = batches.require_all(cb.batch_id, cb.rm_batch_number)

        join_rows = join.read_data()
        affected = {
            cell_text(row[j_batch])
            for row in join_rows
            if cell_text(row[j_order]) in touched and cell_text(row[j_batch])
        }
        if not affected:
            return 0

        rm_by_batch: Dict[str, Set[str]] = {batch_id: set() for batch_id in affected}
        for row in join_rows:
            batch_id = cell_text(row[j_batch])
            if batch_id in rm_by_batch:
                rm_by_batch[batch_id].update(split_newline_list(row[j_rm]))

        values = batches.read_data()
        changed: List[int] = []
        for i, row in enumerate(values):
            batch_id = cell_text(row[b_id])
            if batch_id not in rm_by_batch:
                continue
            shorthand = batch_shorthand(rm_by_batch[batch_id])
            if shorthand is None or shorthand == cell_text(row[b_rm]):
                continue
            row[b_rm] = shorthand
            changed.append(i)

        write_contiguous_rows(self.store, batches.name, values, changed, batches.width)
        logger.info("Batch RM shorthand updated", batches=len(affected), updated=len(changed))
        return len(changed)

    # ---- full import

    def import_manifest(self, manifest: ManifestTable, source_file_name: str = "") -> ManifestImportResult:
        """
        Import one parsed manifest and cascade it through the workbook.

        Raises:
            ConfigurationError: Manifest headers or workbook columns are missing
        """
        self.check_manifest_headers(manifest)
        self.check_tables()

        result = ManifestImportResult(source_file_name=source_file_name)
        if not manifest.rows:
            logger.info("Manifest has no rows", source_file=source_file_name)
            return result

        upsert = self.upsert_shipments(manifest, source_file_name)
        touched = upsert.touched_orders
        result.new_shipments = upsert.appended
        result.updated_shipments = upsert.updated
        result.touched_orders = len(touched)

        result.orders_updated = self.mirror_to_orders(touched)
        result.batch_orders_updated = self.mirror_to_batch_orders(touched)
        result.batches_updated = self.update_batch_shorthand(touched)

        logger.info(
            "Manifest imported",
            source_file=source_file_name,
            new_shipments=result.new_shipments,
            orders_updated=result.orders_updated,
            batch_orders_updated=result.batch_orders_updated,
            batches_updated=result.batches_updated,
        )
        return result


@dataclass
class ManifestPollResult:
    files_processed: int = 0
    new_shipments: int = 0
    imports: List[ManifestImportResult] = field(default_factory=list)


class ManifestPoller:
    """
    Imports pending manifests oldest-first, then marks each one processed
    and archives it. Files already in the processed set are skipped.
    """

    def __init__(self, source: ManifestSource, reconciler: ShipmentReconciler, processed: ProcessedFileStore):
        self.source = source
        self.reconciler = reconciler
        self.processed = processed

    def poll(self) -> ManifestPollResult:
        pending = [f for f in self.source.list_pending() if not self.processed.contains(f.file_id)]
        pending.sort(key=lambda f: f.modified_at)

        result = ManifestPollResult()
        for file in pending:
            imported = self.reconciler.import_manifest(self.source.parse(file), file.name)
            self.processed.add(file.file_id, file.name)
            self.source.archive(file)

            result.files_processed += 1
            result.new_shipments += imported.new_shipments
            result.imports.append(imported)

        if result.files_processed:
            logger.info("Manifest poll complete", files=result.files_processed, new_shipments=result.new_shipments)
        return result
