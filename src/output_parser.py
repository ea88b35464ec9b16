"""
output_parser.py

Decode one chunk's raw model text into RowResult values, exactly once.

Accepted shapes (most to least expected):
    {"results": [{"id": 3, "cols": {"lang": "es"}}, {"id": 4, "result": "..."}]}
    [{"id": 3, "result": "..."}, ...]          bare list
    {"cols": {...}}  /  {"result": "..."}       single object → first row

Any other input degrades to RawText(first row id, whole text). The fallback
is lossy and never raises.

Items inside a results list that carry neither a non-empty "cols" map nor a
"result" are dropped. Ids are coerced to int where possible; otherwise the
reconciler falls back to the item's position within the chunk.
"""

import json
import logging
from typing import Optional

from errors import MalformedOutputError
from models import Chunk, NamedColumns, RawText

logger = logging.getLogger(__name__)


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def _coerce_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def stringify(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def decode_item(item) -> Optional[object]:
    """One results entry → NamedColumns / RawText, or None if it carries nothing."""
    if not isinstance(item, dict):
        return None
    row_id = _coerce_id(item.get("id"))

    cols = item.get("cols")
    if isinstance(cols, dict) and cols:
        return NamedColumns(
            row_id=row_id,
            columns={str(k): stringify(v) for k, v in cols.items()},
        )
    if "result" in item:
        return RawText(row_id=row_id, text=stringify(item["result"]))
    return None


def decode_results(text: str) -> list:
    """
    Strict decode.

    Raises:
        MalformedOutputError: text is not one of the accepted shapes.
    """
    try:
        parsed = json.loads(_strip_fences(text))
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedOutputError(f"not valid JSON: {exc}") from exc

    if isinstance(parsed, dict) and isinstance(parsed.get("results"), list):
        items = parsed["results"]
    elif isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict) and ("cols" in parsed or "result" in parsed):
        single = decode_item(parsed)
        if single is None:
            raise MalformedOutputError("single object has no usable cols/result")
        return [single]
    else:
        raise MalformedOutputError(f"unexpected top-level shape: {type(parsed).__name__}")

    return [decoded for decoded in (decode_item(i) for i in items) if decoded is not None]


def parse_chunk_output(text: str, chunk: Chunk) -> list:
    """Lenient decode used by the workers. Never raises."""
    if not text or not text.strip():
        logger.warning(f"chunk#{chunk.index + 1}: empty completion text: no results.")
        return []

    try:
        return decode_results(text)
    except MalformedOutputError as exc:
        logger.warning(
            f"chunk#{chunk.index + 1}: malformed output ({exc}): raw text kept in "
            f"row {chunk.first_id} 'result'."
        )
        return [RawText(row_id=chunk.first_id, text=text)]
