"""
Data Quality Module
"""
from .exception_log import ExceptionLog, MemoryExceptionLog, TableExceptionLog, open_exception_log

__all__ = [
    "ExceptionLog",
    "MemoryExceptionLog",
    "TableExceptionLog",
    "open_exception_log",
]
