"""
Carrier Manifest Sources

Discovers pending Royal Mail manifest exports, parses them into a
rectangular table and archives them once imported.

Supported formats:
- .csv (polars, every cell read as text)
- .xlsx (pandas + openpyxl)
- .xls (pandas + python-calamine)
"""

import hashlib
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import pandas as pd
import polars as pl
import structlog

from printbatch.storage.tabular import Matrix

logger = structlog.get_logger(__name__)

MANIFEST_EXTENSIONS = (".csv", ".xlsx", ".xls")


@dataclass(frozen=True)
class ManifestFile:
    """A pending external manifest file"""
    file_id: str
    name: str
    modified_at: datetime
    path: Optional[Path] = None


@dataclass
class ManifestTable:
    """Parsed manifest: trimmed headers plus data rows"""
    headers: List[str]
    rows: Matrix = field(default_factory=list)

    def index(self, header: str) -> Optional[int]:
        try:
            return self.headers.index(header)
        except ValueError:
            return None


class ManifestSource(ABC):
    """Where manifest files come from and where they go once consumed"""

    @abstractmethod
    def list_pending(self) -> List[ManifestFile]:
        """Files waiting to be imported"""

    @abstractmethod
    def parse(self, file: ManifestFile) -> ManifestTable:
        """Read a file into headers and rows"""

    @abstractmethod
    def archive(self, file: ManifestFile) -> None:
        """Move a consumed file out of the pending set (idempotent)"""


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _excel_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return value


def frame_to_table(headers: Sequence[Any], rows: Sequence[Sequence[Any]]) -> ManifestTable:
    return ManifestTable(
        headers=["" if h is None else str(h).strip() for h in headers],
        rows=[list(r) for r in rows],
    )


class DirectoryManifestSource(ManifestSource):
    """
    Watch directory of manifest exports.

    File IDs are content digests, so re-dropping an already imported file
    is recognised while a new export reusing the same name is not.

    Example:
        source = DirectoryManifestSource("./data/manifests/incoming", "./data/manifests/archive")
        for file in source.list_pending():
            table = source.parse(file)
    """

    def __init__(
        self,
        watch_dir: Union[str, Path],
        archive_dir: Union[str, Path],
        extensions: Sequence[str] = MANIFEST_EXTENSIONS,
    ):
        self.watch_dir = Path(watch_dir)
        self.archive_dir = Path(archive_dir)
        self.extensions = tuple(e.lower() for e in extensions)

    def list_pending(self) -> List[ManifestFile]:
        if not self.watch_dir.exists():
            logger.warning("Manifest watch directory does not exist", path=str(self.watch_dir))
            return []

        files = []
        for path in sorted(self.watch_dir.iterdir()):
            if not path.is_file() or path.suffix.lower() not in self.extensions:
                continue
            files.append(
                ManifestFile(
                    file_id=_file_digest(path),
                    name=path.name,
                    modified_at=datetime.fromtimestamp(path.stat().st_mtime),
                    path=path,
                )
            )
        return files

    def parse(self, file: ManifestFile) -> ManifestTable:
        path = file.path or (self.watch_dir / file.name)
        suffix = path.suffix.lower()

        if suffix == ".csv":
            df = pl.read_csv(path, infer_schema_length=0).fill_null("")
            table = frame_to_table(df.columns, df.rows())
        elif suffix in (".xlsx", ".xls"):
            engine = "openpyxl" if suffix == ".xlsx" else "calamine"
            pdf = pd.read_excel(path, sheet_name=0, dtype=object, engine=engine)
            rows = [[_excel_cell(v) for v in record] for record in pdf.itertuples(index=False, name=None)]
            table = frame_to_table(list(pdf.columns), rows)
        else:
            raise ValueError(f"Unsupported manifest format: {path.name}")

        logger.debug("Manifest parsed", file=file.name, rows=len(table.rows), columns=len(table.headers))
        return table

    def archive(self, file: ManifestFile) -> None:
        path = file.path or (self.watch_dir / file.name)
        if not path.exists():
            return

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        target = self.archive_dir / path.name
        if target.exists():
            target = self.archive_dir / f"{path.stem}.{file.file_id[:8]}{path.suffix}"
        shutil.move(str(path), str(target))
        logger.info("Manifest archived", file=file.name, target=str(target))
