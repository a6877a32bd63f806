"""
Catalog Index

In-memory SKU lookup built from the SKU_Matrix table at the start of each
enrichment run.

A print profile key is a pipe-separated list of ``code[:count]`` tokens,
e.g. ``"B86:1|B54:2"`` prints one 8x6 and two 5x4 per unit ordered.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import structlog

from printbatch.config.settings import CatalogColumns
from printbatch.storage.tabular import TableHandle
from printbatch.transformation.values import cell_text

logger = structlog.get_logger(__name__)

PRINT_MODE_NONE = "NONE"

_COUNT_SUFFIX = re.compile(r":(\d+)$")


@dataclass(frozen=True)
class CatalogEntry:
    """Print metadata for one SKU"""
    sku: str
    category: str
    mode: str
    profile_key: str
    units_per_item: int

    @property
    def is_non_print(self) -> bool:
        return self.mode == PRINT_MODE_NONE


def parse_profile_key(profile_key: str) -> List[Tuple[str, int]]:
    """Split a profile key into (code, count) pairs; count defaults to 1"""
    pairs = []
    for token in cell_text(profile_key).split("|"):
        token = token.strip()
        if not token:
            continue
        match = _COUNT_SUFFIX.search(token)
        count = int(match.group(1)) if match else 1
        pairs.append((token.split(":")[0].strip(), count))
    return pairs


def sum_print_counts(profile_key: str) -> int:
    """Total prints per unit ordered, e.g. "B86:1|B54:2" -> 3"""
    return sum(count for _, count in parse_profile_key(profile_key))


def primary_code(profile_key: str) -> str:
    """Code of the first token of a profile key"""
    first = cell_text(profile_key).split("|")[0].strip()
    return first.split(":")[0].strip()


def derive_category_fallback(
    mode: str,
    profile_key: str,
    none_category: str = "NONE",
    missing_category: str = "Unknown",
) -> str:
    """Category used when the catalog row leaves PrintCategory blank"""
    if cell_text(mode).upper() == PRINT_MODE_NONE:
        return none_category
    return primary_code(profile_key) or missing_category


class CatalogIndex:
    """
    SKU -> CatalogEntry map.

    Example:
        catalog = CatalogIndex.from_table(open_table(store, "SKU_Matrix"), columns)
        entry = catalog.get("B86-PRINT")
    """

    def __init__(self, entries: Optional[Dict[str, CatalogEntry]] = None):
        self._entries: Dict[str, CatalogEntry] = dict(entries or {})

    @classmethod
    def from_table(cls, table: TableHandle, columns: CatalogColumns) -> "CatalogIndex":
        i_sku, i_mode, i_key, i_cat = table.require_all(
            columns.sku, columns.print_mode, columns.print_profile_key, columns.print_category
        )

        entries: Dict[str, CatalogEntry] = {}
        for row in table.read_data():
            sku = cell_text(row[i_sku])
            if not sku:
                continue
            mode = cell_text(row[i_mode]).upper()
            key = cell_text(row[i_key])
            entries[sku] = CatalogEntry(
                sku=sku,
                category=cell_text(row[i_cat]),
                mode=mode,
                profile_key=key,
                units_per_item=0 if mode == PRINT_MODE_NONE else sum_print_counts(key),
            )

        logger.debug("Catalog index built", table=table.name, skus=len(entries))
        return cls(entries)

    def get(self, sku: str) -> Optional[CatalogEntry]:
        return self._entries.get(cell_text(sku))

    def __contains__(self, sku: str) -> bool:
        return cell_text(sku) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
