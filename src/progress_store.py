"""
progress_store.py

Durable job state on top of a minimal key/value blob store.

BlobStore is the whole contract the engine needs from storage:
get / set / list(prefix) / delete over string keys, no compare-and-swap.
Two backends:

    PostgresBlobStore : _db.py blobs table (production)
    MemoryBlobStore   : dict behind a lock (dev, tests)

ProgressStore owns the key layout and JSON encoding, and moves the sync
backend calls off the event loop with asyncio.to_thread:

    jobs/<id>.json                 JobConfig
    csv/<id>.csv                   original upload
    partials/<id>/<index>.json     ChunkResult, one per finished chunk
    jobs/<id>.status.json          JobStatus
    jobs/<id>.lease.json           worker lease
    batches/<id>.json              provider batch record (batch mode)
    results/<id>.csv               final merged artifact
"""

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from _db import db_delete_blob, db_get_blob, db_list_keys, db_put_blob
from models import ChunkResult, JobConfig

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
CSV_CONTENT_TYPE  = "text/csv; charset=utf-8"


# ── Backends ───────────────────────────────────────────────────────────────────

class BlobStore(ABC):
    """Synchronous key/value blob storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def set(self, key: str, value: bytes, content_type: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def list(self, prefix: str) -> list[str]:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryBlobStore(BlobStore):
    def __init__(self):
        self._data: dict[str, tuple[bytes, Optional[str]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._data.get(key)
        return entry[0] if entry else None

    def set(self, key: str, value: bytes, content_type: Optional[str] = None) -> None:
        with self._lock:
            self._data[key] = (bytes(value), content_type)

    def list(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class PostgresBlobStore(BlobStore):
    """Requires _db.init_db() to have been called."""

    def get(self, key: str) -> Optional[bytes]:
        return db_get_blob(key)

    def set(self, key: str, value: bytes, content_type: Optional[str] = None) -> None:
        db_put_blob(key, value, content_type)

    def list(self, prefix: str) -> list[str]:
        return db_list_keys(prefix)

    def delete(self, key: str) -> None:
        db_delete_blob(key)


# ── Key layout ─────────────────────────────────────────────────────────────────

def config_key(job_id: str) -> str:
    return f"jobs/{job_id}.json"


def source_key(job_id: str) -> str:
    return f"csv/{job_id}.csv"


def partials_prefix(job_id: str) -> str:
    return f"partials/{job_id}/"


def partial_key(job_id: str, chunk_index: int) -> str:
    return f"{partials_prefix(job_id)}{chunk_index:06d}.json"


def status_key(job_id: str) -> str:
    return f"jobs/{job_id}.status.json"


def lease_key(job_id: str) -> str:
    return f"jobs/{job_id}.lease.json"


def batch_key(job_id: str) -> str:
    return f"batches/{job_id}.json"


def artifact_key(job_id: str) -> str:
    return f"results/{job_id}.csv"


# ── Async facade ───────────────────────────────────────────────────────────────

class ProgressStore:
    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    # Raw access

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self.blobs.get, key)

    async def set(self, key: str, value: bytes, content_type: Optional[str] = None) -> None:
        await asyncio.to_thread(self.blobs.set, key, value, content_type)

    async def list_keys(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self.blobs.list, prefix)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.blobs.delete, key)

    async def get_json(self, key: str) -> Optional[dict]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning(f"Ignoring unreadable JSON blob '{key}': {exc}")
            return None
        return data if isinstance(data, dict) else None

    async def set_json(self, key: str, data: dict) -> None:
        payload = json.dumps(data, ensure_ascii=False).encode("utf-8")
        await self.set(key, payload, JSON_CONTENT_TYPE)

    # Job config + source

    async def save_job_config(self, job: JobConfig) -> None:
        await self.set_json(config_key(job.job_id), job.to_dict())

    async def load_job_config(self, job_id: str) -> Optional[JobConfig]:
        data = await self.get_json(config_key(job_id))
        return JobConfig.from_dict(data) if data else None

    async def save_source(self, job_id: str, csv_bytes: bytes) -> None:
        await self.set(source_key(job_id), csv_bytes, CSV_CONTENT_TYPE)

    async def load_source(self, job_id: str) -> Optional[bytes]:
        return await self.get(source_key(job_id))

    # Partials

    async def save_partial(self, job_id: str, partial: ChunkResult) -> None:
        await self.set_json(partial_key(job_id, partial.chunk_index), partial.to_dict())

    async def load_partial(self, job_id: str, chunk_index: int) -> Optional[ChunkResult]:
        data = await self.get_json(partial_key(job_id, chunk_index))
        return ChunkResult.from_dict(data) if data else None

    async def list_partial_indices(self, job_id: str) -> list[int]:
        prefix = partials_prefix(job_id)
        indices: list[int] = []
        for key in await self.list_keys(prefix):
            stem = key[len(prefix):].removesuffix(".json")
            if stem.isdigit():
                indices.append(int(stem))
        return sorted(indices)

    async def load_partials(self, job_id: str, total_chunks: int) -> dict[int, ChunkResult]:
        """Every partial currently persisted for chunk indices [0, total_chunks)."""
        partials: dict[int, ChunkResult] = {}
        for index in await self.list_partial_indices(job_id):
            if index >= total_chunks:
                continue
            partial = await self.load_partial(job_id, index)
            if partial is not None:
                partials[index] = partial
        return partials

    # Status

    async def load_status(self, job_id: str) -> Optional[dict]:
        return await self.get_json(status_key(job_id))

    async def save_status(self, job_id: str, status: dict) -> None:
        await self.set_json(status_key(job_id), status)

    # Lease

    async def load_lease(self, job_id: str) -> Optional[dict]:
        return await self.get_json(lease_key(job_id))

    async def save_lease(self, job_id: str, lease: dict) -> None:
        await self.set_json(lease_key(job_id), lease)

    async def delete_lease(self, job_id: str) -> None:
        await self.delete(lease_key(job_id))

    # Batch record

    async def save_batch_record(self, job_id: str, record: dict) -> None:
        await self.set_json(batch_key(job_id), record)

    async def load_batch_record(self, job_id: str) -> Optional[dict]:
        return await self.get_json(batch_key(job_id))

    async def list_batch_jobs(self) -> list[str]:
        return [
            key[len("batches/"):].removesuffix(".json")
            for key in await self.list_keys("batches/")
        ]

    # Final artifact

    async def save_artifact(self, job_id: str, csv_bytes: bytes) -> None:
        await self.set(artifact_key(job_id), csv_bytes, CSV_CONTENT_TYPE)

    async def load_artifact(self, job_id: str) -> Optional[bytes]:
        return await self.get(artifact_key(job_id))
