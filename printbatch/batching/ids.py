"""
Batch ID allocation.

IDs follow ``B-<YYYYMMDD>-<TYPE>-<CODE>-<seq>`` with a zero-padded
sequence that increases per (date, type, code). The allocator is seeded
once per run from the existing Batches rows.
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional, Tuple

BATCH_ID_PATTERN = re.compile(r"^B-(\d{8})-([A-Z]+)-([A-Z0-9]+)-(\d{3,})$", re.IGNORECASE)

DEFAULT_CODE = "GEN"

SeqKey = Tuple[str, str, str]


@dataclass(frozen=True)
class BatchIdParts:
    ymd: str
    batch_type: str
    code: str
    seq: int

    @property
    def seq_key(self) -> SeqKey:
        return (self.ymd, self.batch_type, self.code)


def normalize_batch_code(code: Optional[str]) -> str:
    """Uppercase alphanumerics only, at most 12 characters"""
    cleaned = re.sub(r"[^A-Z0-9]", "", str(code or "").upper())[:12]
    return cleaned or DEFAULT_CODE


def parse_batch_id(batch_id: str) -> Optional[BatchIdParts]:
    match = BATCH_ID_PATTERN.match(str(batch_id or "").strip())
    if not match:
        return None
    return BatchIdParts(
        ymd=match.group(1),
        batch_type=match.group(2).upper(),
        code=match.group(3).upper(),
        seq=int(match.group(4)),
    )


def format_batch_id(day: date, batch_type: str, code: str, seq: int) -> str:
    return f"B-{day:%Y%m%d}-{batch_type.upper()}-{normalize_batch_code(code)}-{seq:03d}"


def run_number(batch_id: str) -> str:
    """Sequence of a batch ID without padding ("" when there is none)"""
    match = re.search(r"-(\d+)$", str(batch_id or "").strip())
    return str(int(match.group(1))) if match else ""


class BatchIdAllocator:
    """
    Per-(date, type, code) sequence counter.

    Example:
        allocator = BatchIdAllocator()
        allocator.observe("B-20240501-AUTO-B86-002")
        allocator.allocate(date(2024, 5, 1), "AUTO", "B86")  # B-20240501-AUTO-B86-003
    """

    def __init__(self):
        self._max_seq: Dict[SeqKey, int] = {}

    def observe(
        self,
        batch_id: str,
        batch_date: Optional[date] = None,
        batch_type: str = "",
        category: str = "",
    ) -> None:
        """Record an existing ID; malformed IDs seed a zero baseline for their inferred key"""
        parts = parse_batch_id(batch_id)
        if parts is not None:
            self._max_seq[parts.seq_key] = max(self._max_seq.get(parts.seq_key, 0), parts.seq)
            return

        if batch_date is not None and batch_type and category:
            key = (f"{batch_date:%Y%m%d}", batch_type.upper(), normalize_batch_code(category))
            self._max_seq.setdefault(key, 0)

    def current(self, day: date, batch_type: str, code: str) -> int:
        return self._max_seq.get((f"{day:%Y%m%d}", batch_type.upper(), normalize_batch_code(code)), 0)

    def allocate(self, day: date, batch_type: str, code: str) -> str:
        key = (f"{day:%Y%m%d}", batch_type.upper(), normalize_batch_code(code))
        seq = self._max_seq.get(key, 0) + 1
        self._max_seq[key] = seq
        return format_batch_id(day, batch_type, code, seq)
