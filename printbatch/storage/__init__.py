"""
Storage Module
"""
from .tabular import InMemoryTabularStore, TableHandle, TabularStore, open_table
from .csv_store import CsvTabularStore
from .state import (
    CheckpointStore,
    InMemoryCheckpointStore,
    InMemoryProcessedFileStore,
    ProcessedFileStore,
    SqlCheckpointStore,
    SqlProcessedFileStore,
)
from .locks import FileLock, PipelineLock, ThreadingPipelineLock, hold_lock

__all__ = [
    "TabularStore",
    "InMemoryTabularStore",
    "CsvTabularStore",
    "TableHandle",
    "open_table",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqlCheckpointStore",
    "ProcessedFileStore",
    "InMemoryProcessedFileStore",
    "SqlProcessedFileStore",
    "PipelineLock",
    "ThreadingPipelineLock",
    "FileLock",
    "hold_lock",
]
