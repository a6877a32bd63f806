"""
CSV Workbook Store

A directory of ``<Table>.csv`` files treated as one workbook. Tables are
loaded into memory with Polars, mutated through the InMemoryTabularStore
contract, and written back on ``save()``.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import polars as pl
import structlog

from printbatch.storage.tabular import InMemoryTabularStore, Matrix

logger = structlog.get_logger(__name__)

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


def format_cell(value: Any) -> str:
    """Render a cell value as CSV text"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class CsvTabularStore(InMemoryTabularStore):
    """
    Workbook of CSV files.

    All cells are read as text; the pipeline's parsing helpers coerce dates,
    flags and integers on read.

    Example:
        store = CsvTabularStore("data/workbook")
        store.load()
        ...
        store.save()
    """

    def __init__(self, directory: Union[str, Path], encoding: str = "utf8"):
        super().__init__()
        self.directory = Path(directory)
        self.encoding = encoding

    def _path(self, table: str) -> Path:
        return self.directory / f"{table}.csv"

    def _read_csv(self, path: Path) -> Matrix:
        """Read one CSV with every column as text"""
        df = pl.read_csv(path, infer_schema_length=0, encoding=self.encoding).fill_null("")
        headers = list(df.columns)
        rows = [["" if v is None else v for v in row] for row in df.iter_rows()]
        return [headers] + rows

    def load(self, tables: Optional[List[str]] = None) -> "CsvTabularStore":
        """Load every CSV in the directory (or only the named tables)"""
        if not self.directory.exists():
            raise FileNotFoundError(f"Workbook directory not found: {self.directory}")

        paths = (
            [self._path(t) for t in tables]
            if tables
            else sorted(self.directory.glob("*.csv"))
        )
        for path in paths:
            if not path.exists():
                continue
            self._tables[path.stem] = self._read_csv(path)

        logger.info(
            "Workbook loaded",
            directory=str(self.directory),
            tables=len(self._tables),
        )
        return self

    def save(self) -> None:
        """Write every table back to its CSV file"""
        self.directory.mkdir(parents=True, exist_ok=True)

        for table, rows in self._tables.items():
            headers = self.get_headers(table)
            data = self.snapshot(table)
            columns: Dict[str, List[str]] = {
                h: [format_cell(r[i]) if i < len(r) else "" for r in data]
                for i, h in enumerate(headers)
            }
            df = pl.DataFrame(columns, schema={h: pl.Utf8 for h in headers})
            df.write_csv(self._path(table))

        logger.info(
            "Workbook saved",
            directory=str(self.directory),
            tables=len(self._tables),
        )
