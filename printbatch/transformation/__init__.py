"""
Transformation Module
"""
from .catalog import CatalogEntry, CatalogIndex, parse_profile_key, sum_print_counts
from .enrichers import EnrichmentResult, ItemEnricher, ScanWindow
from .values import Flag, parse_date, parse_flag, to_int

__all__ = [
    "CatalogEntry",
    "CatalogIndex",
    "parse_profile_key",
    "sum_print_counts",
    "EnrichmentResult",
    "ItemEnricher",
    "ScanWindow",
    "Flag",
    "parse_date",
    "parse_flag",
    "to_int",
]
