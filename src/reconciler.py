"""
reconciler.py

Merge persisted chunk partials back into the original rows.

For each chunk index in order, every RowResult is routed to a target row:

    explicit id    when the result carries one
    positional     only when it carries none: chunk_index * chunk_size + position

NamedColumns writes each of its columns; RawText writes the "result" column.
Targets outside [0, N) are dropped, including explicit ids out of range. Chunks with no partial are skipped, which
is what makes a partial download of a running job possible.

Output headers = original headers, then dynamic columns in first-seen order.
A dynamic name equal to an original header stays in its original position
and is overwritten only for rows that supply it. Unset cells are "".
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import RESULT_COLUMN, ChunkResult, NamedColumns, Row

logger = logging.getLogger(__name__)


@dataclass
class MergedTable:
    headers: list[str]
    rows: list[dict]


def _target_row(row_id: Optional[int], chunk_index: int, chunk_size: int, position: int) -> int:
    if row_id is not None:
        return row_id
    return chunk_index * chunk_size + position


def reconcile(
    headers: list[str],
    rows: list[Row],
    partials: dict[int, ChunkResult],
    chunk_size: int,
    total_chunks: int,
) -> MergedTable:
    row_count = len(rows)
    merged = [dict(row.fields) for row in rows]

    original = set(headers)
    dynamic: list[str] = []
    seen = set(original)
    dropped = 0

    def note_column(name: str) -> None:
        if name not in seen:
            seen.add(name)
            dynamic.append(name)

    for chunk_index in range(total_chunks):
        partial = partials.get(chunk_index)
        if partial is None:
            continue

        for position, item in enumerate(partial.results):
            target = _target_row(item.row_id, chunk_index, chunk_size, position)
            if not 0 <= target < row_count:
                dropped += 1
                continue

            if isinstance(item, NamedColumns):
                for name, value in item.columns.items():
                    note_column(name)
                    merged[target][name] = value
            else:
                note_column(RESULT_COLUMN)
                merged[target][RESULT_COLUMN] = item.text

    if dropped:
        logger.warning(f"Reconcile: {dropped} result(s) pointed outside rows [0, {row_count}): ignored.")

    out_headers = list(headers) + dynamic
    out_rows = [{h: row.get(h, "") for h in out_headers} for row in merged]
    return MergedTable(headers=out_headers, rows=out_rows)
