"""
Prefect Workflow Orchestration - Fulfillment

Scheduled flows for the print batching pipeline:
- Order pipeline (sync -> batch -> batch orders) every couple of minutes
- Royal Mail manifest import on a slower poll
- Manual repair flows (recompute orders, full rescan)

Every task runs one locked pipeline operation, so overlapping runs wait on
the pipeline lock instead of interleaving writes.
"""

from datetime import timedelta
from typing import Optional

from prefect import flow, get_run_logger, serve, task

from printbatch.config import get_settings
from printbatch.pipeline import build_pipeline

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="sync_order_items",
    description="Enrich new order items and upsert their orders",
    retries=2,
    retry_delay_seconds=30,
)
def sync_order_items() -> dict:
    """Enrichment + incremental order upsert"""
    logger = get_run_logger()

    result = build_pipeline(settings).sync_orders()

    logger.info(
        f"Sync complete: {result.enrichment.scanned} rows scanned, "
        f"{result.enrichment.changed} changed, {result.orders.appended_rows} new orders"
    )
    return {
        "scanned": result.enrichment.scanned,
        "changed": result.enrichment.changed,
        "exceptions_logged": result.enrichment.exceptions_logged,
        "removed_digital": result.enrichment.removed_digital,
        "checkpoint": result.enrichment.new_checkpoint,
        "orders_updated": result.orders.updated_rows,
        "orders_appended": result.orders.appended_rows,
    }


@task(
    name="create_batches",
    description="Assign eligible items to print batches",
    retries=2,
    retry_delay_seconds=30,
)
def create_batches(include_today: bool = False) -> dict:
    """Batch assignment"""
    logger = get_run_logger()

    result = build_pipeline(settings).create_batches(include_today=include_today)

    logger.info(f"Batching complete: {result.new_batches} new batches, {result.items_assigned} items assigned")
    return {
        "new_batches": result.new_batches,
        "items_assigned": result.items_assigned,
        "existing_batches_updated": result.existing_batches_updated,
        "new_batch_ids": result.new_batch_ids,
    }


@task(
    name="rebuild_batch_orders",
    description="Reconcile the BatchOrders join table",
    retries=2,
    retry_delay_seconds=30,
)
def rebuild_batch_orders() -> dict:
    """BatchOrders reconciliation"""
    logger = get_run_logger()

    result = build_pipeline(settings).rebuild_batch_orders()

    logger.info(f"BatchOrders reconciled: {result.updated} updated, {result.appended} appended, {result.cleared} cleared")
    return {
        "desired": result.desired,
        "updated": result.updated,
        "appended": result.appended,
        "cleared": result.cleared,
    }


@task(
    name="import_manifests",
    description="Import pending Royal Mail manifest exports",
    retries=1,
    retry_delay_seconds=60,
)
def import_manifests() -> dict:
    """Manifest poll"""
    logger = get_run_logger()

    result = build_pipeline(settings).import_manifests()

    logger.info(f"Manifest import complete: {result.files_processed} files, {result.new_shipments} new shipments")
    return {
        "files_processed": result.files_processed,
        "new_shipments": result.new_shipments,
        "files": [i.source_file_name for i in result.imports],
    }


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="process_waiting_orders",
    description="Sync order items, batch them and rebuild BatchOrders",
)
def process_waiting_orders(include_today: bool = False, rebuild_batch_orders_stage: bool = True) -> dict:
    """
    Order pipeline.

    Steps:
    1. Enrich new order items and upsert their orders
    2. Create or reuse print batches
    3. Rebuild the BatchOrders join table
    """
    logger = get_run_logger()
    logger.info(f"Starting order pipeline (include_today={include_today})")

    results = {"steps": {}}

    try:
        results["steps"]["sync"] = sync_order_items()
        results["steps"]["batch"] = create_batches(include_today=include_today)
        if rebuild_batch_orders_stage:
            results["steps"]["batch_orders"] = rebuild_batch_orders()
        results["status"] = "success"

    except Exception as e:
        logger.error(f"Order pipeline failed: {e}")
        results["status"] = "failed"
        results["error"] = str(e)
        raise

    return results


@flow(
    name="royal_mail_import",
    description="Import Royal Mail manifests and mirror tracking onto orders",
)
def royal_mail_import() -> dict:
    """Manifest import flow"""
    logger = get_run_logger()

    try:
        result = import_manifests()
    except Exception as e:
        logger.error(f"Royal Mail import failed: {e}")
        raise

    return {"status": "success", **result}


@flow(
    name="recompute_orders",
    description="Re-aggregate every order from its line items",
)
def recompute_orders(rescan: bool = False) -> dict:
    """
    Repair flow.

    With ``rescan`` the enrichment checkpoint is reset and every order item
    re-derived before the orders are recomputed.
    """
    logger = get_run_logger()
    pipeline = build_pipeline(settings)

    results = {}
    if rescan:
        enrichment = pipeline.rescan_order_items()
        results["rescanned"] = enrichment.scanned

    upsert = pipeline.recompute_orders()
    results.update(
        touched_orders=upsert.touched_orders,
        updated_rows=upsert.updated_rows,
        appended_rows=upsert.appended_rows,
    )
    logger.info(f"Recomputed {upsert.touched_orders} orders")
    return results


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

def serve_all(include_today: Optional[bool] = None) -> None:
    """Serve the scheduled deployments from this process"""
    serve(
        process_waiting_orders.to_deployment(
            name="order-pipeline",
            interval=timedelta(minutes=settings.perf.sync_every_minutes),
            parameters={"include_today": bool(include_today)},
        ),
        royal_mail_import.to_deployment(
            name="royal-mail-import",
            interval=timedelta(minutes=settings.royal_mail.poll_every_minutes),
        ),
        recompute_orders.to_deployment(name="recompute-orders"),
    )


if __name__ == "__main__":
    serve_all()
