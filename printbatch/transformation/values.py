"""
Cell Value Parsing

Explicit parsers for the loosely-typed cells found in the workbook tables.
Handles:
- Tri-state flags (TRUE / FALSE / blank)
- Blankish placeholder strings
- Integer coercion with half-up rounding
- Timestamps stored as values or as text
- Newline-separated value lists and tracking links
"""

import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import quote
from zoneinfo import ZoneInfo

TRUE_TOKENS = {"true", "yes", "y", "1"}

DATETIME_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d %b %Y %H:%M",
    "%d %b %Y",
]

_LEADING_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


class Flag(str, Enum):
    """Parsed state of a boolean-ish cell"""
    TRUE = "true"
    FALSE = "false"
    BLANK = "blank"


def cell_text(value: Any) -> str:
    """Trimmed text form of a cell; integral floats lose their '.0'"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_flag(value: Any) -> Flag:
    """
    Parse a boolean-ish cell.

    True/"true"/"yes"/"y"/"1" are TRUE, empty cells are BLANK and anything
    else (including the literal "0") is FALSE.
    """
    if value is True:
        return Flag.TRUE
    if value is False:
        return Flag.FALSE
    if isinstance(value, (int, float)):
        return Flag.TRUE if value == 1 else Flag.FALSE
    text = cell_text(value).lower()
    if not text:
        return Flag.BLANK
    return Flag.TRUE if text in TRUE_TOKENS else Flag.FALSE


def is_true(value: Any) -> bool:
    return parse_flag(value) is Flag.TRUE


class BlankishMatcher:
    """
    Case- and whitespace-insensitive test for placeholder values.

    Example:
        blankish = BlankishMatcher(["(blank)", "blank"])
        blankish(" (Blank) ")  # True
    """

    def __init__(self, values: Iterable[str]):
        self.values = {cell_text(v).lower() for v in values}

    def __call__(self, value: Any) -> bool:
        text = cell_text(value).lower()
        return not text or text in self.values


def is_blankish(value: Any, blankish_values: Sequence[str]) -> bool:
    return BlankishMatcher(blankish_values)(value)


def round_half_up(number: float) -> int:
    return int(math.floor(number + 0.5))


def to_int(value: Any, fallback: int = 0) -> int:
    """
    Coerce a cell to an integer.

    Numbers round half-up; text uses its leading numeric part
    ("3 pcs" -> 3); booleans and unparseable values give the fallback.
    """
    if isinstance(value, bool) or value is None:
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return round_half_up(value) if math.isfinite(value) else fallback

    match = _LEADING_NUMBER.match(cell_text(value))
    if not match:
        return fallback
    number = float(match.group(0))
    return round_half_up(number) if math.isfinite(number) else fallback


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a timestamp cell, returning None when it cannot be read"""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass

    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    return None


def local_now(timezone: str) -> datetime:
    """Current wall-clock time in the business timezone, without tzinfo"""
    return datetime.now(ZoneInfo(timezone)).replace(tzinfo=None)


def split_newline_list(value: Any) -> List[str]:
    return [part.strip() for part in re.split(r"\r?\n", cell_text(value)) if part.strip()]


def merge_newline_list(existing: Any, incoming: Any) -> str:
    """
    Merge two newline-separated lists into a sorted list of unique values.

    An empty side returns the other side unchanged.
    """
    current = cell_text(existing)
    new = cell_text(incoming)
    if not current:
        return new
    if not new:
        return current

    merged = set(split_newline_list(current))
    merged.update(split_newline_list(new))
    return "\n".join(sorted(merged))


def tracking_url(value: Any, prefix: str) -> str:
    """Render a tracking number as a carrier tracking link"""
    text = cell_text(value)
    if not text:
        return ""
    if text.startswith(prefix):
        return text
    return prefix + quote(text, safe="!*'()")


def tracking_urls(newline_list: Any, prefix: str) -> str:
    return "\n".join(tracking_url(v, prefix) for v in split_newline_list(newline_list))


def normalize_status(value: Any) -> str:
    return cell_text(value).lower()


def cell_signature(value: Any) -> str:
    """
    Comparable form of a cell.

    Timestamps render the way the CSV store writes them, so a stored text
    timestamp and the same instant held as a datetime compare equal.
    """
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    return cell_text(value)


def row_signature(row: Sequence[Any]) -> str:
    return "\x1f".join(cell_signature(v) for v in row)
