#!/usr/bin/env python
"""
Print Batching Pipeline CLI

Usage:
    printbatch process                 # sync -> batch -> batch orders
    printbatch process --stage batch   # run one stage
    printbatch batch --include-today
    printbatch import-manifests
"""

import argparse
import dataclasses
import json
import sys
from typing import Any, List, Optional

import structlog

from printbatch.config import get_settings
from printbatch.config.logging import configure_logging
from printbatch.errors import PipelineError
from printbatch.pipeline import FulfillmentPipeline, build_pipeline

logger = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _jsonable(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="printbatch", description="Print batching and fulfillment pipeline")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ERROR)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Enrich new order items and upsert their orders")

    batch = sub.add_parser("batch", help="Assign eligible items to print batches")
    batch.add_argument("--include-today", action="store_true", help="Also batch today's items")

    sub.add_parser("batch-orders", help="Rebuild the BatchOrders table")

    process = sub.add_parser("process", help="Run sync, batching and BatchOrders in order")
    process.add_argument("--include-today", action="store_true", help="Also batch today's items")
    process.add_argument("--skip-batch-orders", action="store_true", help="Skip the BatchOrders stage")
    process.add_argument("--stage", default=None, help="Run one stage only: sync | batch | batchorders")

    sub.add_parser("recompute-orders", help="Re-aggregate every order")
    sub.add_parser("rescan", help="Reset the checkpoint and enrich every order item")
    sub.add_parser("reset-checkpoint", help="Make the next sync rescan all order items")
    sub.add_parser("refresh-batch-names", help="Recompute every PrintBatchName")
    sub.add_parser("import-manifests", help="Import pending Royal Mail manifest exports")

    return parser


def run_command(pipeline: FulfillmentPipeline, args: argparse.Namespace) -> Any:
    command = args.command
    if command == "sync":
        return pipeline.sync_orders()
    if command == "batch":
        return pipeline.create_batches(include_today=args.include_today)
    if command == "batch-orders":
        return pipeline.rebuild_batch_orders()
    if command == "process":
        return pipeline.process_waiting_orders(
            include_today=args.include_today,
            rebuild_batch_orders=not args.skip_batch_orders,
            stage=args.stage,
        )
    if command == "recompute-orders":
        return pipeline.recompute_orders()
    if command == "rescan":
        return pipeline.rescan_order_items()
    if command == "reset-checkpoint":
        return pipeline.reset_checkpoint()
    if command == "refresh-batch-names":
        return {"renamed": pipeline.refresh_batch_names()}
    if command == "import-manifests":
        return pipeline.import_manifests()
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        result = run_command(build_pipeline(get_settings()), args)
    except PipelineError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1

    if result is not None:
        print(json.dumps(_jsonable(result), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
