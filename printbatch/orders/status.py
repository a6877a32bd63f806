"""
Order status derivation.

Derived states in increasing rank: NEW -> IN_PRODUCTION -> READY_TO_PACK ->
PACKED. HOLD, DESPATCHED and DELIVERED are manual or carrier-driven and are
never produced or overwritten here.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Optional

from printbatch.config.settings import StatusSettings


class DerivedState(IntEnum):
    NEW = 1
    IN_PRODUCTION = 2
    READY_TO_PACK = 3
    PACKED = 4


def status_label(state: DerivedState, statuses: StatusSettings) -> str:
    return {
        DerivedState.NEW: statuses.new,
        DerivedState.IN_PRODUCTION: statuses.in_production,
        DerivedState.READY_TO_PACK: statuses.ready_to_pack,
        DerivedState.PACKED: statuses.packed,
    }[state]


def status_rank(label: str, statuses: StatusSettings) -> Optional[int]:
    """Rank of a derived status label, None for anything else"""
    for state in DerivedState:
        if label == status_label(state, statuses):
            return int(state)
    return None


def is_manual_or_final(label: str, statuses: StatusSettings) -> bool:
    return (label or "").strip() in statuses.manual_or_final


@dataclass
class OrderAggregate:
    """Line item signals folded per order, in ascending row order"""
    order_name: str
    all_ready: bool = True
    earliest_created_at: Optional[datetime] = None
    any_in_prod_signal: bool = False
    all_printed: bool = True
    all_packed: bool = True
    max_packed_at: Optional[datetime] = None
    last_packed_by: str = ""

    def derive(self) -> DerivedState:
        if self.all_packed:
            return DerivedState.PACKED
        if self.all_printed:
            return DerivedState.READY_TO_PACK
        if self.any_in_prod_signal:
            return DerivedState.IN_PRODUCTION
        return DerivedState.NEW
