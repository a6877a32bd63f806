"""
Human-friendly batch names.

``dd/mm/yyyy - <label> - <RM batch number>``, or
``dd/mm/yyyy - <label> - Run <n>`` while the carrier batch number is blank.
"""

from datetime import date
from typing import Dict, Optional

import structlog

from printbatch.batching.ids import DEFAULT_CODE, run_number
from printbatch.config.settings import Settings
from printbatch.storage.tabular import TabularStore, open_table
from printbatch.transformation.values import cell_text, parse_date

logger = structlog.get_logger(__name__)


def category_label(category: str, labels: Optional[Dict[str, str]] = None) -> str:
    code = cell_text(category)
    if not code:
        return DEFAULT_CODE
    labels = labels or {}
    return labels.get(code) or labels.get(code.upper()) or code


def make_print_batch_name(
    batch_date: date,
    category: str,
    batch_id: str,
    rm_batch_number: str = "",
    labels: Optional[Dict[str, str]] = None,
) -> str:
    date_part = batch_date.strftime("%d/%m/%Y")
    label = category_label(category, labels)

    rm = cell_text(rm_batch_number)
    if rm:
        return f"{date_part} - {label} - {rm}"
    return f"{date_part} - {label} - Run {run_number(batch_id)}"


def refresh_batch_names(store: TabularStore, settings: Settings) -> int:
    """
    Recompute PrintBatchName for every batch.

    Rows without a parseable BatchDate or a BatchID keep their name. The
    column is written once, and only when at least one name changed.

    Returns:
        Number of names changed
    """
    cols = settings.columns.batches
    batches = open_table(store, settings.tables.batches)
    i_id, i_date, i_cat, i_name, i_rm = batches.require_all(
        cols.batch_id, cols.batch_date, cols.print_category, cols.print_batch_name, cols.rm_batch_number
    )

    rows = batches.read_data()
    names = []
    changed = 0
    for row in rows:
        current = cell_text(row[i_name])
        batch_id = cell_text(row[i_id])
        batch_date = parse_date(row[i_date])

        desired = current
        if batch_date is not None and batch_id:
            desired = make_print_batch_name(
                batch_date, cell_text(row[i_cat]), batch_id, row[i_rm], settings.batch.category_labels
            )

        names.append([desired if desired != current else row[i_name]])
        if desired != current:
            changed += 1

    if changed:
        store.write_rows(batches.name, 2, names, start_col=i_name + 1)

    logger.info("Batch names refreshed", table=batches.name, changed=changed)
    return changed
