"""
Batching Module
"""
from .assignment import BatchAssigner, BatchAssignmentResult, split_by_max_units
from .ids import BatchIdAllocator, format_batch_id, parse_batch_id
from .naming import make_print_batch_name, refresh_batch_names

__all__ = [
    "BatchAssigner",
    "BatchAssignmentResult",
    "split_by_max_units",
    "BatchIdAllocator",
    "format_batch_id",
    "parse_batch_id",
    "make_print_batch_name",
    "refresh_batch_names",
]
