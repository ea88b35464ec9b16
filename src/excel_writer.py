"""
excel_writer.py

Builds an .xlsx rendition of a merged job table.

Single sheet: "Results"
    Header row = merged headers (original columns, then model columns).
    One row per input row, original order.
    No colours. Frozen header row. Auto-filter. Columns sized to content,
    capped at _MAX_WIDTH; long text cells wrap.
"""

import io
import logging
import os
import re
from datetime import datetime

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

logger = logging.getLogger(__name__)

_FONT_NAME   = "Calibri"
_FONT_HEADER = Font(name=_FONT_NAME, bold=True, size=10)
_FONT_BODY   = Font(name=_FONT_NAME, size=10)

_ALIGN_HEADER = Alignment(horizontal="center", vertical="center", wrap_text=True)
_ALIGN_LEFT   = Alignment(horizontal="left",   vertical="center", wrap_text=False)
_ALIGN_WRAP   = Alignment(horizontal="left",   vertical="top",    wrap_text=True)

_MIN_WIDTH     = 10
_MAX_WIDTH     = 60
_WRAP_AT_CHARS = 60     # cells longer than this wrap instead of overflowing
_WIDTH_SAMPLE  = 500    # rows inspected when sizing columns


# ── Helpers ────────────────────────────────────────────────────────────────────

def _clean(value) -> str:
    """Stringify and drop control characters openpyxl refuses to write."""
    if value is None:
        return ""
    return ILLEGAL_CHARACTERS_RE.sub("", str(value))


def _col_width(header: str, values: list[str]) -> int:
    longest = max([len(header)] + [len(v) for v in values]) + 2
    return max(_MIN_WIDTH, min(_MAX_WIDTH, longest))


# ── Sheet builder ──────────────────────────────────────────────────────────────

def _write_results_sheet(sheet, headers: list[str], rows: list[dict]) -> None:
    for col_idx, header in enumerate(headers, start=1):
        cell = sheet.cell(row=1, column=col_idx, value=_clean(header))
        cell.font      = _FONT_HEADER
        cell.alignment = _ALIGN_HEADER

    sheet.freeze_panes = "A2"
    sheet.row_dimensions[1].height = 30
    if headers:
        sheet.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    for row_idx, record in enumerate(rows, start=2):
        for col_idx, header in enumerate(headers, start=1):
            text = _clean(record.get(header, ""))
            cell = sheet.cell(row=row_idx, column=col_idx)
            cell.value = text
            # Model output starting with "=" stays text, never a formula.
            if text.startswith("="):
                cell.data_type = "s"
            cell.font      = _FONT_BODY
            cell.alignment = _ALIGN_WRAP if len(text) > _WRAP_AT_CHARS else _ALIGN_LEFT

    sample = rows[:_WIDTH_SAMPLE]
    for col_idx, header in enumerate(headers, start=1):
        values = [_clean(r.get(header, "")) for r in sample]
        sheet.column_dimensions[get_column_letter(col_idx)].width = _col_width(header, values)


# ── Public API ─────────────────────────────────────────────────────────────────

def build_excel(headers: list[str], rows: list[dict]) -> bytes:
    """
    Build the Excel workbook: single Results sheet.

    Args:
        headers: Column order for the sheet.
        rows:    One dict per row, keyed by header. Missing keys render empty.

    Returns:
        Raw .xlsx bytes.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    _write_results_sheet(ws, headers, rows)

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    logger.info(f"Excel built: {len(rows)} row(s), {len(headers)} column(s).")
    return buffer.read()


def get_output_filename(job_id: str, fmt: str, source_filename: str = "", partial: bool = False) -> str:
    """e.g. reviews_3f2a91c0_20250101_120000.csv, reviews_3f2a91c0_partial_….xlsx"""
    stem = os.path.splitext(os.path.basename(source_filename))[0] if source_filename else "results"
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", stem).strip("_") or "results"
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = "_partial" if partial else ""
    return f"{stem}_{job_id[:8]}{suffix}_{timestamp}.{fmt}"
