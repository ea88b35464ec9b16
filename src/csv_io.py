"""
csv_io.py

CSV in, CSV out.

parse_rows() turns an uploaded CSV into ordered Row objects. Every value is
read as a string (no NaN / type inference) so the original fields round-trip
into the merged output unchanged. A UTF-8 BOM is tolerated. Lines with more
fields than the header are skipped and counted in a warning.

table_to_csv() / read_table() serialise the merged table.
"""

import io
import logging
from typing import Optional

import pandas as pd

from models import Row

logger = logging.getLogger(__name__)


def _read_frame(data: bytes) -> pd.DataFrame:
    skipped: list[list[str]] = []

    def skip_bad_line(fields: list[str]) -> None:
        skipped.append(fields)
        return None

    try:
        df = pd.read_csv(
            io.BytesIO(data),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=True,
            engine="python",
            on_bad_lines=skip_bad_line,
        )
    except pd.errors.EmptyDataError as e:
        raise ValueError("CSV is empty") from e
    except Exception as e:
        raise ValueError(f"CSV parse error: {e}") from e

    if skipped:
        logger.warning(
            f"CSV: skipped {len(skipped)} malformed line(s) with more fields than the header "
            f"(first: {skipped[0][:5]})."
        )
    return df.fillna("")


def parse_rows(
    data: bytes,
    input_col: str,
    max_rows: Optional[int] = None,
) -> tuple[list[str], list[Row]]:
    """
    Parse CSV bytes into (headers, rows).

    Row ids are 0-based and contiguous in file order. A missing input column
    yields an empty text for every row rather than an error.

    Raises:
        ValueError: if the bytes are not a readable CSV.
    """
    df = _read_frame(data)
    headers = [str(c) for c in df.columns]

    if input_col not in headers:
        logger.warning(
            f"Input column '{input_col}' not found in CSV headers {headers}. "
            f"Every row will be sent with empty text."
        )

    records = df.to_dict("records")
    if max_rows is not None and max_rows > 0:
        records = records[:max_rows]

    rows = [
        Row(
            id=idx,
            fields={str(k): str(v) for k, v in rec.items()},
            text=str(rec.get(input_col, "")),
        )
        for idx, rec in enumerate(records)
    ]
    return headers, rows


def table_to_csv(headers: list[str], rows: list[dict]) -> bytes:
    df = pd.DataFrame(rows, columns=headers).fillna("")
    return df.to_csv(index=False).encode("utf-8")


def read_table(data: bytes) -> tuple[list[str], list[dict]]:
    """Inverse of table_to_csv: used to re-render a stored artifact as XLSX."""
    df = _read_frame(data)
    return [str(c) for c in df.columns], df.to_dict("records")
