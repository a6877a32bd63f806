"""
Reconciliation Module
"""
from .batch_orders import BatchOrdersReconciler, BatchOrdersResult
from .shipments import ManifestImportResult, ManifestPoller, ManifestPollResult, ShipmentReconciler

__all__ = [
    "BatchOrdersReconciler",
    "BatchOrdersResult",
    "ManifestImportResult",
    "ManifestPoller",
    "ManifestPollResult",
    "ShipmentReconciler",
]
