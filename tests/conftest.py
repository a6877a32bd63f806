"""
Test Suite Configuration
"""
from datetime import datetime
from typing import Callable, Dict, List

import pytest

from printbatch.config import Settings
from printbatch.quality import MemoryExceptionLog
from printbatch.storage import InMemoryCheckpointStore, InMemoryTabularStore

NOW = datetime(2024, 5, 10, 9, 30)
YESTERDAY = datetime(2024, 5, 9, 14, 0)

TRACKING_PREFIX = "https://www.royalmail.com/track-your-item#/tracking-results/"


def workbook_headers(settings: Settings) -> Dict[str, List[str]]:
    """Header rows of the seven workbook tables, in column-model order"""
    t = settings.tables
    c = settings.columns
    return {
        t.order_items: list(c.order_items.model_dump().values()),
        t.orders: list(c.orders.model_dump().values()),
        t.sku_matrix: list(c.sku_matrix.model_dump().values()),
        t.exceptions: list(c.exceptions.model_dump().values()),
        t.batches: list(c.batches.model_dump().values()),
        t.batch_orders: list(c.batch_orders.model_dump().values()),
        t.shipments: list(c.shipments.model_dump().values()),
    }


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(app_env="testing")


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Fixed wall clock"""
    return lambda: NOW


@pytest.fixture
def store(test_settings) -> InMemoryTabularStore:
    """In-memory workbook with every table created and a small catalog"""
    workbook = InMemoryTabularStore()
    for table, headers in workbook_headers(test_settings).items():
        workbook.create_table(table, headers)

    workbook.append_rows(
        test_settings.tables.sku_matrix,
        [
            ["B86", "PRINT", "B86:1", "8x6"],
            ["B54-2", "PRINT", "B54:2", "5x4"],
            ["COMBO", "PRINT", "B86:1|B54:2", ""],
            ["CARD", "NONE", "", ""],
        ],
    )
    workbook.clear_operations()
    return workbook


@pytest.fixture
def add_rows(store) -> Callable:
    """Append rows given as header -> value dicts"""

    def _add(table: str, *records: dict) -> None:
        headers = store.get_headers(table)
        unknown = {k for r in records for k in r} - set(headers)
        assert not unknown, f"unknown headers for {table}: {unknown}"
        store.append_rows(table, [[r.get(h, "") for h in headers] for r in records])
        store.clear_operations()

    return _add


@pytest.fixture
def records(store) -> Callable:
    """Read a table back as header -> value dicts"""

    def _records(table: str) -> List[dict]:
        headers = store.get_headers(table)
        return [dict(zip(headers, row)) for row in store.snapshot(table)]

    return _records


@pytest.fixture
def checkpoints() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def exception_log() -> MemoryExceptionLog:
    return MemoryExceptionLog()
