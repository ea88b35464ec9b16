"""
models.py

Shared data structures for the chunked completion engine.

    JobConfig   : immutable job settings, written once at submission.
    Row         : one input CSV row (ordinal id + original fields + text).
    Chunk       : a contiguous slice of rows sent as one completion call.
    NamedColumns / RawText
                : the two shapes a per-row model result can take, decoded
                   once by output_parser so the reconciler never sees JSON.
    ChunkResult : the persisted partial for one finished chunk.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional, Union

# ── Job status constants ───────────────────────────────────────────────────────

STATUS_QUEUED  = "queued"
STATUS_RUNNING = "running"
STATUS_READY   = "ready"
STATUS_FAILED  = "failed"

TERMINAL_STATUSES = (STATUS_READY, STATUS_FAILED)

# ── Processing modes ───────────────────────────────────────────────────────────

MODE_DIRECT = "direct"   # in-process worker pool, resumable, aborts on fatal chunk
MODE_BATCH  = "batch"    # provider Batch API, failed chunks get an error marker

MODES = (MODE_DIRECT, MODE_BATCH)

RESULT_COLUMN = "result"


@dataclass(frozen=True)
class JobConfig:
    job_id: str
    model: str
    prompt: str
    input_col: str
    chunk_size: int
    concurrency: int
    row_count: int
    created_at: str
    mode: str = MODE_DIRECT
    reasoning_effort: str = ""
    verbosity: str = ""
    headers: list[str] = field(default_factory=list)
    filename: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "JobConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class Row:
    id: int
    fields: dict
    text: str


@dataclass(frozen=True)
class Chunk:
    index: int
    rows: tuple

    @property
    def first_id(self) -> int:
        return self.rows[0].id

    def payload(self) -> dict:
        """The {"rows": [...]} object sent to the model for this chunk."""
        return {"rows": [{"id": r.id, "text": r.text} for r in self.rows]}


@dataclass(frozen=True)
class NamedColumns:
    row_id: Optional[int]
    columns: dict


@dataclass(frozen=True)
class RawText:
    row_id: Optional[int]
    text: str


RowResult = Union[NamedColumns, RawText]


@dataclass
class ChunkResult:
    chunk_index: int
    results: list = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        items = []
        for item in self.results:
            if isinstance(item, NamedColumns):
                items.append({"id": item.row_id, "cols": dict(item.columns)})
            else:
                items.append({"id": item.row_id, "result": item.text})
        return {"chunk_index": self.chunk_index, "results": items, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkResult":
        results: list = []
        for item in data.get("results") or []:
            row_id = item.get("id")
            if "cols" in item:
                results.append(NamedColumns(row_id=row_id, columns=dict(item["cols"])))
            else:
                results.append(RawText(row_id=row_id, text=item.get("result", "")))
        return cls(
            chunk_index=int(data["chunk_index"]),
            results=results,
            error=data.get("error"),
        )
