"""
Orders Module
"""
from .aggregator import OrderAggregator, OrderUpsertResult
from .status import DerivedState, OrderAggregate, is_manual_or_final, status_label, status_rank

__all__ = [
    "OrderAggregator",
    "OrderUpsertResult",
    "DerivedState",
    "OrderAggregate",
    "is_manual_or_final",
    "status_label",
    "status_rank",
]
