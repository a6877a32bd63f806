"""
Tabular Store

Abstract row/column storage the pipeline reads and writes through.
Rows are 1-indexed and row 1 always holds the headers; columns are
resolved by header name, never by position.

Includes:
- TabularStore interface
- InMemoryTabularStore reference implementation with an operation log
- TableHandle for header lookup and bulk reads
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import structlog

from printbatch.errors import ConfigurationError

logger = structlog.get_logger(__name__)

Row = List[Any]
Matrix = List[Row]


def is_empty_cell(value: Any) -> bool:
    """A cell with no content"""
    return value is None or (isinstance(value, str) and value.strip() == "")


def is_empty_row(row: Sequence[Any]) -> bool:
    return all(is_empty_cell(v) for v in row)


class TabularStore(ABC):
    """
    Named tables of rows with a header row.

    Row numbers are absolute (row 1 = headers, data from row 2).
    Column numbers are 1-based.
    """

    @abstractmethod
    def has_table(self, table: str) -> bool:
        """Whether the named table exists"""

    @abstractmethod
    def get_headers(self, table: str) -> List[str]:
        """Header row, trimmed"""

    @abstractmethod
    def last_row(self, table: str) -> int:
        """Last row with any content (1 when only headers exist)"""

    @abstractmethod
    def read_rows(self, table: str, start_row: int, num_rows: int) -> Matrix:
        """Read full-width rows, padded to the header width"""

    @abstractmethod
    def write_rows(
        self,
        table: str,
        start_row: int,
        values: Matrix,
        start_col: int = 1,
    ) -> None:
        """Overwrite a rectangular block starting at (start_row, start_col)"""

    @abstractmethod
    def append_rows(self, table: str, values: Matrix) -> None:
        """Write rows directly after the last row with content"""

    @abstractmethod
    def delete_rows(self, table: str, start_row: int, count: int) -> None:
        """Remove rows, shifting the rows below them up"""

    @abstractmethod
    def clear_rows(self, table: str, start_row: int, count: int) -> None:
        """Wipe row content while keeping the rows in place"""


@dataclass
class StoreOperation:
    """One mutating call against a store"""
    op: str
    table: str
    start_row: int
    num_rows: int
    start_col: int = 1
    num_cols: int = 0


class InMemoryTabularStore(TabularStore):
    """
    Tabular store backed by Python lists.

    Every mutating call is appended to ``operations`` so callers can assert
    exactly which writes a run performed.

    Example:
        store = InMemoryTabularStore()
        store.create_table("Orders", ["OrderName", "CreatedAt", "OrderStatus"])
        store.append_rows("Orders", [["#1001", created_at, "New"]])
    """

    def __init__(self, tables: Optional[Dict[str, Matrix]] = None):
        self._tables: Dict[str, Matrix] = {}
        self.operations: List[StoreOperation] = []
        for name, rows in (tables or {}).items():
            self._tables[name] = [list(r) for r in rows]

    # ---- table management

    def create_table(self, table: str, headers: Sequence[str], rows: Optional[Matrix] = None) -> None:
        self._tables[table] = [list(headers)] + [self._pad(list(r), len(headers)) for r in (rows or [])]

    def table_names(self) -> List[str]:
        return list(self._tables.keys())

    def snapshot(self, table: str) -> Matrix:
        """Copy of all data rows (row 2 onwards, up to the last row)"""
        return self.read_rows(table, 2, self.last_row(table) - 1) if self.last_row(table) >= 2 else []

    def clear_operations(self) -> None:
        self.operations = []

    def mutations(self, table: Optional[str] = None) -> List[StoreOperation]:
        return [op for op in self.operations if table is None or op.table == table]

    # ---- internals

    def _rows(self, table: str) -> Matrix:
        if table not in self._tables:
            raise ConfigurationError(f"Missing table: {table}")
        return self._tables[table]

    @staticmethod
    def _pad(row: Row, width: int) -> Row:
        if len(row) < width:
            row.extend([""] * (width - len(row)))
        return row

    def _width(self, table: str) -> int:
        rows = self._rows(table)
        return max((len(r) for r in rows), default=0)

    def _ensure_rows(self, table: str, last_row: int) -> None:
        rows = self._rows(table)
        width = self._width(table)
        while len(rows) < last_row:
            rows.append([""] * width)

    def _record(self, op: str, table: str, start_row: int, num_rows: int, start_col: int = 1, num_cols: int = 0) -> None:
        self.operations.append(StoreOperation(op, table, start_row, num_rows, start_col, num_cols))

    # ---- TabularStore

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def get_headers(self, table: str) -> List[str]:
        rows = self._rows(table)
        if not rows:
            return []
        return ["" if h is None else str(h).strip() for h in rows[0]]

    def last_row(self, table: str) -> int:
        rows = self._rows(table)
        for i in range(len(rows) - 1, 0, -1):
            if not is_empty_row(rows[i]):
                return i + 1
        return 1

    def read_rows(self, table: str, start_row: int, num_rows: int) -> Matrix:
        rows = self._rows(table)
        width = self._width(table)
        out: Matrix = []
        for r in range(start_row, start_row + max(num_rows, 0)):
            row = list(rows[r - 1]) if r - 1 < len(rows) else []
            out.append(self._pad(row, width))
        return out

    def write_rows(self, table: str, start_row: int, values: Matrix, start_col: int = 1) -> None:
        if not values:
            return
        if start_row < 2:
            raise ValueError("Data rows start at row 2")
        self._ensure_rows(table, start_row + len(values) - 1)
        rows = self._rows(table)
        for offset, new_values in enumerate(values):
            row = rows[start_row - 1 + offset]
            self._pad(row, start_col - 1 + len(new_values))
            for c, v in enumerate(new_values):
                row[start_col - 1 + c] = v
        self._record("write", table, start_row, len(values), start_col, len(values[0]))

    def append_rows(self, table: str, values: Matrix) -> None:
        if not values:
            return
        rows = self._rows(table)
        # Trailing cleared rows are reused, the same way a sheet appends after its last content row
        del rows[self.last_row(table):]
        width = self._width(table)
        start = len(rows) + 1
        for v in values:
            rows.append(self._pad(list(v), width))
        self._record("append", table, start, len(values), 1, len(values[0]))

    def delete_rows(self, table: str, start_row: int, count: int) -> None:
        if count <= 0:
            return
        if start_row < 2:
            raise ValueError("Cannot delete the header row")
        rows = self._rows(table)
        del rows[start_row - 1:start_row - 1 + count]
        self._record("delete", table, start_row, count)

    def clear_rows(self, table: str, start_row: int, count: int) -> None:
        if count <= 0:
            return
        rows = self._rows(table)
        for r in range(start_row - 1, min(start_row - 1 + count, len(rows))):
            rows[r] = [""] * len(rows[r])
        self._record("clear", table, start_row, count)


class TableHandle:
    """
    Header-aware view of one table.

    Resolves columns by header name and reads the data block in one call.
    Missing required headers raise ConfigurationError before any write.
    """

    def __init__(self, store: TabularStore, name: str):
        if not store.has_table(name):
            raise ConfigurationError(f"Missing table: {name}")
        self.store = store
        self.name = name
        self.headers = store.get_headers(name)
        self.col_map: Dict[str, int] = {}
        for i, h in enumerate(self.headers):
            if h and h not in self.col_map:
                self.col_map[h] = i

    @property
    def width(self) -> int:
        return len(self.headers)

    def require(self, header: str) -> int:
        """0-based index of a required header"""
        if header not in self.col_map:
            raise ConfigurationError(f'Missing column in {self.name}: "{header}"')
        return self.col_map[header]

    def require_all(self, *headers: str) -> List[int]:
        missing = [h for h in headers if h not in self.col_map]
        if missing:
            names = ", ".join(f'"{h}"' for h in missing)
            raise ConfigurationError(f"Missing columns in {self.name}: {names}")
        return [self.col_map[h] for h in headers]

    def optional(self, header: Optional[str]) -> Optional[int]:
        """0-based index of an optional header, or None"""
        if not header:
            return None
        return self.col_map.get(header)

    def last_row(self) -> int:
        return self.store.last_row(self.name)

    def read_data(self) -> Matrix:
        """All data rows (row 2 to the last row); index i is sheet row i + 2"""
        last = self.last_row()
        if last < 2:
            return []
        return self.store.read_rows(self.name, 2, last - 1)

    def blank_row(self) -> Row:
        return [""] * self.width


def open_table(store: TabularStore, name: str) -> TableHandle:
    """Open a table, raising ConfigurationError if it does not exist"""
    return TableHandle(store, name)


def open_optional_table(store: TabularStore, name: str) -> Optional[TableHandle]:
    """Open a table that may legitimately be absent"""
    if not store.has_table(name):
        logger.debug("Optional table not present", table=name)
        return None
    return TableHandle(store, name)
