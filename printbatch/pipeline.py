"""
Fulfillment Pipeline Orchestration

Entry points that mutate the workbook. Each one runs under the
process-wide pipeline lock, logs a short message on failure and re-raises
so callers (CLI, Prefect flows) can halt.

Order pipeline: Sync (enrichment + order upsert) -> Batch assignment ->
BatchOrders reconciliation. Manifest import runs separately.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, TypeVar

import structlog

from printbatch.batching.assignment import BatchAssigner, BatchAssignmentResult
from printbatch.batching.naming import refresh_batch_names
from printbatch.config.logging import operation_context
from printbatch.config.settings import Settings, get_settings
from printbatch.errors import ConfigurationError
from printbatch.ingestion.manifests import DirectoryManifestSource, ManifestSource
from printbatch.orders.aggregator import OrderAggregator, OrderUpsertResult
from printbatch.quality.exception_log import ExceptionLog, open_exception_log
from printbatch.reconciliation.batch_orders import BatchOrdersReconciler, BatchOrdersResult
from printbatch.reconciliation.shipments import ManifestPoller, ManifestPollResult, ShipmentReconciler
from printbatch.storage.connection import init_state_database
from printbatch.storage.csv_store import CsvTabularStore
from printbatch.storage.locks import FileLock, PipelineLock, hold_lock
from printbatch.storage.state import CheckpointStore, ProcessedFileStore, SqlCheckpointStore, SqlProcessedFileStore
from printbatch.storage.tabular import TabularStore
from printbatch.transformation.enrichers import EnrichmentResult, ItemEnricher
from printbatch.transformation.values import local_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PipelineStage(str, Enum):
    """Stages runnable on their own"""
    SYNC = "sync"
    BATCH = "batch"
    BATCH_ORDERS = "batchorders"


@dataclass
class SyncResult:
    enrichment: EnrichmentResult
    orders: OrderUpsertResult


@dataclass
class ProcessResult:
    """Outcome of process_waiting_orders"""
    stages: List[str] = field(default_factory=list)
    sync: Optional[SyncResult] = None
    batches: Optional[BatchAssignmentResult] = None
    batch_orders: Optional[BatchOrdersResult] = None
    duration_seconds: float = 0.0


class FulfillmentPipeline:
    """
    Locked entry points over one workbook.

    ``on_acquire`` / ``on_release`` run inside the lock around every
    operation; the CSV workbook uses them to reload before and save after.
    ``on_release`` also runs when an operation fails, so writes applied
    before the failure are kept.

    Example:
        pipeline = build_pipeline()
        pipeline.process_waiting_orders(include_today=True)
    """

    def __init__(
        self,
        store: TabularStore,
        settings: Settings,
        checkpoints: CheckpointStore,
        processed_files: ProcessedFileStore,
        lock: PipelineLock,
        exception_log: Optional[ExceptionLog] = None,
        manifest_source: Optional[ManifestSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_acquire: Optional[Callable[[], None]] = None,
        on_release: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.settings = settings
        self.checkpoints = checkpoints
        self.processed_files = processed_files
        self.lock = lock
        self.exception_log = exception_log
        self.manifest_source = manifest_source
        self.clock = clock or (lambda: local_now(settings.timezone))
        self.on_acquire = on_acquire
        self.on_release = on_release

    # ---- plumbing

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            with operation_context(operation), hold_lock(self.lock, self.settings.perf.lock_timeout_seconds, operation):
                if self.on_acquire:
                    self.on_acquire()
                try:
                    return fn()
                finally:
                    if self.on_release:
                        self.on_release()
        except Exception as e:
            logger.error(f"{operation} failed: {e}", operation=operation, error_type=type(e).__name__)
            raise

    def _exception_log(self) -> Optional[ExceptionLog]:
        if self.exception_log is not None:
            return self.exception_log
        return open_exception_log(self.store, self.settings.tables.exceptions, self.settings.columns.exceptions)

    def _enricher(self) -> ItemEnricher:
        return ItemEnricher(self.store, self.settings, self.checkpoints, self._exception_log(), self.clock)

    # ---- order items / orders

    def sync_orders(self) -> SyncResult:
        """Enrich the OrderItems scan window, then upsert the orders it touched"""

        def run() -> SyncResult:
            enrichment = self._enricher().enrich()
            orders = OrderAggregator(self.store, self.settings).derive_and_upsert(enrichment.touched_order_names)
            return SyncResult(enrichment=enrichment, orders=orders)

        result = self._run("Sync", run)
        logger.info(
            "Sync complete",
            scanned=result.enrichment.scanned,
            changed=result.enrichment.changed,
            exceptions=result.enrichment.exceptions_logged,
            checkpoint=result.enrichment.new_checkpoint,
        )
        return result

    def reset_checkpoint(self) -> None:
        """Next sync rescans the whole OrderItems table"""
        self._run("Reset checkpoint", lambda: self._enricher().reset_checkpoint())

    def rescan_order_items(self) -> EnrichmentResult:
        """Reset the checkpoint and enrich every row now (no order upsert)"""

        def run() -> EnrichmentResult:
            enricher = self._enricher()
            enricher.reset_checkpoint()
            return enricher.enrich(overlap_rows=0)

        return self._run("Full rescan", run)

    def recompute_orders(self) -> OrderUpsertResult:
        """Re-aggregate every order (repair)"""
        return self._run("Recompute orders", lambda: OrderAggregator(self.store, self.settings).derive_and_upsert(None))

    # ---- batches

    def create_batches(self, include_today: bool = False) -> BatchAssignmentResult:
        return self._run(
            "Batching",
            lambda: BatchAssigner(self.store, self.settings, self.clock).assign_batches(include_today=include_today),
        )

    def rebuild_batch_orders(self) -> BatchOrdersResult:
        return self._run("BatchOrders", lambda: BatchOrdersReconciler(self.store, self.settings, self.clock).reconcile())

    def refresh_batch_names(self) -> int:
        return self._run("Refresh batch names", lambda: refresh_batch_names(self.store, self.settings))

    def run_stage(self, stage: str, include_today: bool = False) -> ProcessResult:
        """Run one named stage: sync | batch | batchorders"""
        try:
            selected = PipelineStage(str(stage or "").strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown stage: {stage}. Use sync | batch | batchorders") from None

        result = ProcessResult(stages=[selected.value])
        if selected is PipelineStage.SYNC:
            result.sync = self.sync_orders()
        elif selected is PipelineStage.BATCH:
            result.batches = self.create_batches(include_today=include_today)
        else:
            result.batch_orders = self.rebuild_batch_orders()
        return result

    def process_waiting_orders(
        self,
        include_today: bool = False,
        rebuild_batch_orders: bool = True,
        stage: Optional[str] = None,
    ) -> ProcessResult:
        """
        Sync -> Batch -> BatchOrders, each stage under its own lock hold.

        Args:
            include_today: Batch today's items even when full_days_only is set
            rebuild_batch_orders: Run the BatchOrders stage
            stage: Run only this stage instead of the whole pipeline
        """
        started = time.monotonic()
        if stage:
            result = self.run_stage(stage, include_today=include_today)
        else:
            result = ProcessResult()
            logger.info("Pipeline step 1/3: syncing order items")
            result.sync = self.sync_orders()
            result.stages.append(PipelineStage.SYNC.value)

            logger.info("Pipeline step 2/3: creating or reusing batches", include_today=include_today)
            result.batches = self.create_batches(include_today=include_today)
            result.stages.append(PipelineStage.BATCH.value)

            if rebuild_batch_orders:
                logger.info("Pipeline step 3/3: rebuilding batch orders")
                result.batch_orders = self.rebuild_batch_orders()
                result.stages.append(PipelineStage.BATCH_ORDERS.value)

        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info("Pipeline complete", stages=result.stages, duration_seconds=result.duration_seconds)
        return result

    # ---- carrier manifests

    def import_manifests(self) -> ManifestPollResult:
        """Import every pending manifest from the configured source"""
        if self.manifest_source is None:
            raise ConfigurationError("No manifest source configured")

        def run() -> ManifestPollResult:
            reconciler = ShipmentReconciler(self.store, self.settings, self.clock)
            return ManifestPoller(self.manifest_source, reconciler, self.processed_files).poll()

        return self._run("Royal Mail import", run)


def build_pipeline(settings: Optional[Settings] = None) -> FulfillmentPipeline:
    """
    Factory for the production pipeline.

    Uses the CSV workbook directory, the SQLAlchemy state database, a file
    lock and the Royal Mail watch directory from settings.
    """
    settings = settings or get_settings()

    store = CsvTabularStore(settings.storage.workbook_dir)
    session_factory = init_state_database(settings.storage.state_url, echo=settings.storage.echo)

    return FulfillmentPipeline(
        store=store,
        settings=settings,
        checkpoints=SqlCheckpointStore(session_factory),
        processed_files=SqlProcessedFileStore(session_factory),
        lock=FileLock(settings.storage.lock_file),
        manifest_source=DirectoryManifestSource(settings.royal_mail.watch_dir, settings.royal_mail.archive_dir),
        on_acquire=store.load,
        on_release=store.save,
    )
