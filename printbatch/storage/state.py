"""
Durable State Stores

Injected get/set stores for process-wide state, so tests can substitute
in-memory fakes for the SQL-backed implementations.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from printbatch.storage.connection import session_scope
from printbatch.storage.models import PipelineCheckpoint, ProcessedManifestFile

ORDER_ITEMS_CHECKPOINT_KEY = "ORDERITEMS_CHECKPOINT_LASTROW"


class CheckpointStore(ABC):
    """Integer watermark per key"""

    @abstractmethod
    def get(self, key: str) -> Optional[int]:
        """Stored value, or None when never set"""

    @abstractmethod
    def set(self, key: str, value: int) -> None:
        """Persist a value"""


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._values: Dict[str, int] = dict(initial or {})

    def get(self, key: str) -> Optional[int]:
        return self._values.get(key)

    def set(self, key: str, value: int) -> None:
        self._values[key] = int(value)


class SqlCheckpointStore(CheckpointStore):
    """Checkpoints persisted through SQLAlchemy"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[int]:
        with session_scope(self.session_factory) as session:
            row = session.get(PipelineCheckpoint, key)
            return row.value if row is not None else None

    def set(self, key: str, value: int) -> None:
        with session_scope(self.session_factory) as session:
            row = session.get(PipelineCheckpoint, key)
            if row is None:
                session.add(PipelineCheckpoint(key=key, value=int(value)))
            else:
                row.value = int(value)


class ProcessedFileStore(ABC):
    """Set of external file IDs already consumed"""

    @abstractmethod
    def contains(self, file_id: str) -> bool:
        """Whether the file was already processed"""

    @abstractmethod
    def add(self, file_id: str, file_name: str = "") -> None:
        """Mark a file as processed (idempotent)"""

    @abstractmethod
    def all(self) -> Set[str]:
        """Every processed file ID"""


class InMemoryProcessedFileStore(ProcessedFileStore):
    def __init__(self, initial: Optional[Set[str]] = None):
        self._ids: Set[str] = set(initial or set())

    def contains(self, file_id: str) -> bool:
        return file_id in self._ids

    def add(self, file_id: str, file_name: str = "") -> None:
        self._ids.add(file_id)

    def all(self) -> Set[str]:
        return set(self._ids)


class SqlProcessedFileStore(ProcessedFileStore):
    """Processed file IDs persisted through SQLAlchemy"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def contains(self, file_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            return session.get(ProcessedManifestFile, file_id) is not None

    def add(self, file_id: str, file_name: str = "") -> None:
        with session_scope(self.session_factory) as session:
            if session.get(ProcessedManifestFile, file_id) is None:
                session.add(ProcessedManifestFile(file_id=file_id, file_name=file_name))

    def all(self) -> Set[str]:
        with session_scope(self.session_factory) as session:
            return set(session.scalars(select(ProcessedManifestFile.file_id)).all())
