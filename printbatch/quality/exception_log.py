"""
Exception Log

Destination for recovered data-quality issues. Logging is optional: when
no log is configured, issues are counted by the caller but not recorded.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Set, Tuple

import structlog

from printbatch.config.settings import ExceptionColumns
from printbatch.errors import DataQualityIssue
from printbatch.storage.tabular import TableHandle, TabularStore, open_optional_table

logger = structlog.get_logger(__name__)

IssueKey = Tuple[Any, Any, Any, Any]


class ExceptionLog(ABC):
    """Append-only sink for DataQualityIssue entries"""

    def append(self, issue: DataQualityIssue) -> None:
        self.extend([issue])

    @abstractmethod
    def extend(self, issues: Iterable[DataQualityIssue]) -> int:
        """Record issues, returning how many were written"""

    @abstractmethod
    def known_keys(self) -> Set[IssueKey]:
        """Keys of every issue already recorded"""


class MemoryExceptionLog(ExceptionLog):
    """Collects issues in a list"""

    def __init__(self):
        self.issues: List[DataQualityIssue] = []

    def extend(self, issues: Iterable[DataQualityIssue]) -> int:
        batch = list(issues)
        self.issues.extend(batch)
        return len(batch)

    def known_keys(self) -> Set[IssueKey]:
        return {issue.key for issue in self.issues}


class TableExceptionLog(ExceptionLog):
    """
    Writes issues to the Exceptions table by header name.

    All issues passed to one ``extend`` call land in a single append.
    Headers that are absent from the table are skipped.
    """

    def __init__(self, table: TableHandle, columns: ExceptionColumns):
        self.table = table
        self.columns = columns
        table.require_all(columns.type, columns.message)

    def _to_row(self, issue: DataQualityIssue) -> list:
        row = self.table.blank_row()
        c = self.columns
        for header, value in (
            (c.logged_at, issue.logged_at),
            (c.type, issue.type),
            (c.order_name, issue.order_name),
            (c.line_item_id, issue.item_id),
            (c.sku, issue.sku),
            (c.message, issue.message),
        ):
            idx = self.table.optional(header)
            if idx is not None:
                row[idx] = value
        return row

    def extend(self, issues: Iterable[DataQualityIssue]) -> int:
        rows = [self._to_row(issue) for issue in issues]
        if not rows:
            return 0

        self.table.store.append_rows(self.table.name, rows)
        logger.info("Exceptions logged", table=self.table.name, count=len(rows))
        return len(rows)

    def known_keys(self) -> Set[IssueKey]:
        """Raw (Type, OrderName, LineItemID, SKU) cells of every logged row"""
        c = self.columns
        cols = [self.table.optional(h) for h in (c.type, c.order_name, c.line_item_id, c.sku)]
        return {
            tuple("" if i is None else row[i] for i in cols)
            for row in self.table.read_data()
        }


def open_exception_log(store: TabularStore, table_name: str, columns: ExceptionColumns) -> Optional[TableExceptionLog]:
    """Exception log over the named table, or None when the table does not exist"""
    table = open_optional_table(store, table_name)
    if table is None:
        return None
    return TableExceptionLog(table, columns)
