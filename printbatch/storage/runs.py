"""
Contiguous-run write helpers.

Row indices here are 0-based positions in a table's data block, so the
absolute row number of index i is i + 2.
"""

from typing import Iterable, List, Sequence, Tuple

from printbatch.storage.tabular import Matrix, TabularStore

FIRST_DATA_ROW = 2


def contiguous_runs(indices: Iterable[int]) -> List[Tuple[int, int]]:
    """Collapse indices into sorted inclusive (start, end) runs"""
    ordered = sorted(set(indices))
    if not ordered:
        return []

    runs = []
    start = prev = ordered[0]
    for cur in ordered[1:]:
        if cur == prev + 1:
            prev = cur
        else:
            runs.append((start, prev))
            start = prev = cur
    runs.append((start, prev))
    return runs


def write_contiguous_rows(
    store: TabularStore,
    table: str,
    values: Matrix,
    row_indices: Iterable[int],
    width: int,
) -> int:
    """Write full rows for the given indices, one write per contiguous run"""
    runs = contiguous_runs(row_indices)
    for start, end in runs:
        block = [list(values[i][:width]) + [""] * (width - len(values[i][:width])) for i in range(start, end + 1)]
        store.write_rows(table, FIRST_DATA_ROW + start, block)
    return len(runs)


def write_contiguous_column(
    store: TabularStore,
    table: str,
    values: Matrix,
    row_indices: Iterable[int],
    col_index: int,
) -> int:
    """Write a single column for the given indices, one write per contiguous run"""
    runs = contiguous_runs(row_indices)
    for start, end in runs:
        block = [[values[i][col_index]] for i in range(start, end + 1)]
        store.write_rows(table, FIRST_DATA_ROW + start, block, start_col=col_index + 1)
    return len(runs)


def clear_contiguous_rows(store: TabularStore, table: str, row_indices: Iterable[int]) -> int:
    """Wipe row content for the given indices without deleting rows"""
    runs = contiguous_runs(row_indices)
    for start, end in runs:
        store.clear_rows(table, FIRST_DATA_ROW + start, end - start + 1)
    return len(runs)


def delete_rows_bottom_up(store: TabularStore, table: str, row_numbers: Sequence[int]) -> int:
    """
    Delete absolute row numbers in maximal contiguous runs from the bottom up.

    Deleting from the bottom of the table means earlier deletions never shift the
    row numbers of pending ones. The header row is never deleted.

    Returns:
        Number of rows deleted
    """
    rows = sorted({int(r) for r in row_numbers if int(r) >= FIRST_DATA_ROW}, reverse=True)
    if not rows:
        return 0

    run_top = rows[0]
    run_len = 1
    for cur in rows[1:]:
        if cur == run_top - run_len:
            run_len += 1
        else:
            store.delete_rows(table, run_top - run_len + 1, run_len)
            run_top = cur
            run_len = 1
    store.delete_rows(table, run_top - run_len + 1, run_len)
    return len(rows)
