"""
status_reporter.py

Job status record + the pure update rule applied on every write.

next_status(prev, delta):
    completed_chunks / processed_rows / total_chunks → max(prev, delta)
    every other field given in delta                  → overwrites
    message                                           → appended to events,
                                                        last `event_limit` kept

Counters therefore never move backwards, even when a slow writer lands after
a faster one. StatusReporter does the store read → next_status → write cycle
and serialises its own writers with an asyncio.Lock; writers in other
processes are reconciled only by the max rule.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from config import STATUS_EVENT_LIMIT
from models import STATUS_QUEUED

logger = logging.getLogger(__name__)

_MONOTONIC_FIELDS = ("completed_chunks", "processed_rows", "total_chunks")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobStatus:
    job_id: str
    status: str = STATUS_QUEUED
    completed_chunks: int = 0
    processed_rows: int = 0
    total_chunks: int = 0
    row_count: int = 0
    last_error: Optional[str] = None
    last_error_status: Optional[int] = None
    batch_id: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None
    events: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "JobStatus":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class StatusDelta:
    status: Optional[str] = None
    completed_chunks: Optional[int] = None
    processed_rows: Optional[int] = None
    total_chunks: Optional[int] = None
    row_count: Optional[int] = None
    last_error: Optional[str] = None
    last_error_status: Optional[int] = None
    batch_id: Optional[str] = None
    finished_at: Optional[str] = None
    message: Optional[str] = None


def next_status(
    prev: JobStatus,
    delta: StatusDelta,
    now: str,
    event_limit: int = STATUS_EVENT_LIMIT,
) -> JobStatus:
    changes: dict = {"updated_at": now}

    for name in _MONOTONIC_FIELDS:
        value = getattr(delta, name)
        if value is not None:
            changes[name] = max(getattr(prev, name), value)

    for name in ("status", "row_count", "last_error", "last_error_status", "batch_id", "finished_at"):
        value = getattr(delta, name)
        if value is not None:
            changes[name] = value

    events = list(prev.events)
    if delta.message:
        events.append({"ts": now, "msg": delta.message})
    changes["events"] = events[-event_limit:] if event_limit > 0 else []

    return replace(prev, **changes)


class StatusReporter:
    """
    Read-modify-write access to one job's status record.

    Usage:
        reporter = StatusReporter(store, job_id)
        await reporter.update(status=STATUS_RUNNING, message="worker: start")
        await reporter.update(completed_chunks=3, processed_rows=600)
    """

    def __init__(self, store, job_id: str, event_limit: int = STATUS_EVENT_LIMIT):
        self.store = store
        self.job_id = job_id
        self.event_limit = event_limit
        self._lock = asyncio.Lock()

    async def snapshot(self) -> Optional[JobStatus]:
        data = await self.store.load_status(self.job_id)
        return JobStatus.from_dict(data) if data else None

    async def update(self, **fields) -> JobStatus:
        delta = StatusDelta(**fields)
        async with self._lock:
            prev = await self.snapshot() or JobStatus(job_id=self.job_id)
            current = next_status(prev, delta, utc_now_iso(), self.event_limit)
            await self.store.save_status(self.job_id, current.to_dict())
        if delta.message:
            logger.info(f"[{self.job_id}] {current.status}: {delta.message}")
        return current
