"""
batch_processor.py

Async job engine: submit, run, resume, collect, query and download.

Two processing modes, chosen per job at submission:

    direct   ChunkPlanner → WorkerPool (RetryableCompletionClient per chunk)
             → one persisted partial per chunk → Reconciler → CSV artifact.
             Resumable: partials already in the store are skipped. A chunk
             that stays failed after all retries aborts the job (status
             "failed", no artifact).

    batch    All chunks go out as one provider Batch API job. collect_batch()
             polls it and, once the provider is done, writes one partial per
             chunk. A chunk that failed inside the batch fills every one of
             its rows with "[ERROR] <message>", and the job still becomes
             "ready".

Every run is gated twice:
    _active   in-process set of job ids, so a second invocation in the same
              process exits before touching the store.
    Lease     advisory, TTL-bound record in the store (see lease.py) for
              invocations in other processes.

Failures never escape the public run / collect methods. They are written
once to the job's status record, which is what callers poll.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from batch_api import BATCH_DONE_STATES, BATCH_FAILED_STATES, build_batch_jsonl, parse_batch_output
from chunk_planner import clamp_chunk_size, count_chunks, plan_chunks, processed_rows
from completion_client import build_request_body
from config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_PROMPT,
    ERROR_MARKER,
    MAX_DIRECT_CONCURRENCY,
    MODEL,
    STATUS_EVENT_LIMIT,
)
from csv_io import parse_rows, read_table, table_to_csv
from errors import CompletionError, JobDataError, MissingMetadataError, MissingSourceDataError
from excel_writer import build_excel, get_output_filename
from lease import LeaseManager
from models import (
    MODE_BATCH,
    MODE_DIRECT,
    MODES,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_READY,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    Chunk,
    ChunkResult,
    JobConfig,
    RawText,
    Row,
)
from output_parser import parse_chunk_output
from progress_store import ProgressStore
from reconciler import MergedTable, reconcile
from retry import RetryableCompletionClient, RetryPolicy, is_retryable_status
from status_reporter import JobStatus, StatusReporter, utc_now_iso
from worker_pool import run_worker_pool

logger = logging.getLogger(__name__)

# Above this many chunks, progress is written every _REPORT_EVERY chunks
# (and always for the last one) instead of after every chunk.
_REPORT_ALL_UP_TO = 50
_REPORT_EVERY     = 3

FORMAT_CSV  = "csv"
FORMAT_XLSX = "xlsx"
FORMATS     = (FORMAT_CSV, FORMAT_XLSX)

_MEDIA_TYPES = {
    FORMAT_CSV:  "text/csv; charset=utf-8",
    FORMAT_XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


@dataclass
class Artifact:
    content: bytes
    media_type: str
    filename: str


def should_report(completed: int, total: int) -> bool:
    if total <= _REPORT_ALL_UP_TO:
        return True
    return completed % _REPORT_EVERY == 0 or completed >= total


def _error_partial(chunk: Chunk, message: str) -> ChunkResult:
    return ChunkResult(
        chunk_index=chunk.index,
        results=[RawText(row_id=row.id, text=f"{ERROR_MARKER} {message}") for row in chunk.rows],
        error=message,
    )


def _batch_error_message(batch: dict) -> Optional[str]:
    errors = (batch.get("errors") or {}).get("data") or []
    messages = [e.get("message") for e in errors if isinstance(e, dict) and e.get("message")]
    if messages:
        return "; ".join(messages)
    if batch.get("status") in BATCH_FAILED_STATES:
        return f"batch {batch.get('status')}"
    return None


class JobEngine:
    """
    Usage:
        engine = JobEngine(ProgressStore(MemoryBlobStore()), CompletionClient(api_key))
        job    = await engine.submit_job(csv_bytes, input_col="text")
        await engine.process_job(job.job_id)
        status = await engine.get_status(job.job_id)
    """

    def __init__(
        self,
        store: ProgressStore,
        completion_client,
        batch_client=None,
        lease_manager: Optional[LeaseManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = MAX_DIRECT_CONCURRENCY,
        event_limit: int = STATUS_EVENT_LIMIT,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.completion = RetryableCompletionClient(completion_client, self.retry_policy)
        self.batch_client = batch_client
        self.leases = lease_manager or LeaseManager(store)
        self.max_concurrency = max_concurrency
        self.event_limit = event_limit
        self._active: set[str] = set()

    # ── Submission ─────────────────────────────────────────────────────────────

    def effective_concurrency(self, requested: int) -> int:
        return max(1, min(int(requested), self.max_concurrency))

    def _prepare(
        self,
        csv_bytes: bytes,
        job_id: str,
        input_col: str,
        prompt: str,
        model: str,
        chunk_size,
        concurrency,
        mode: str,
        reasoning_effort: str,
        verbosity: str,
        max_rows: Optional[int],
        filename: str,
    ) -> tuple[JobConfig, list[Row]]:
        if mode not in MODES:
            raise ValueError(f"Unknown mode '{mode}'. Expected one of: {', '.join(MODES)}.")
        if not input_col:
            raise ValueError("input_col is required.")

        headers, rows = parse_rows(csv_bytes, input_col, max_rows=max_rows)
        if not rows:
            raise ValueError("CSV has no data rows.")

        try:
            requested = max(1, int(concurrency))
        except (TypeError, ValueError):
            requested = DEFAULT_CONCURRENCY

        job = JobConfig(
            job_id=job_id,
            model=model or MODEL,
            prompt=prompt or DEFAULT_PROMPT,
            input_col=input_col,
            chunk_size=clamp_chunk_size(chunk_size),
            concurrency=requested,
            row_count=len(rows),
            created_at=utc_now_iso(),
            mode=mode,
            reasoning_effort=reasoning_effort or "",
            verbosity=verbosity or "",
            headers=headers,
            filename=filename or "",
        )
        return job, rows

    async def submit_job(
        self,
        csv_bytes: bytes,
        input_col: str,
        prompt: str = DEFAULT_PROMPT,
        model: str = MODEL,
        chunk_size=DEFAULT_CHUNK_SIZE,
        concurrency=DEFAULT_CONCURRENCY,
        mode: str = MODE_DIRECT,
        reasoning_effort: str = "",
        verbosity: str = "",
        max_rows: Optional[int] = None,
        filename: str = "",
    ) -> JobConfig:
        """
        Validate the upload and persist config, source CSV and a queued status.

        Raises:
            ValueError: unreadable CSV, no rows, or unknown mode.
        """
        job, rows = self._prepare(
            csv_bytes, uuid.uuid4().hex, input_col, prompt, model, chunk_size,
            concurrency, mode, reasoning_effort, verbosity, max_rows, filename,
        )
        total = count_chunks(job.row_count, job.chunk_size)

        await self.store.save_source(job.job_id, csv_bytes)
        await self.store.save_job_config(job)
        await StatusReporter(self.store, job.job_id, self.event_limit).update(
            status=STATUS_QUEUED,
            total_chunks=total,
            row_count=job.row_count,
            message=f"submitted: {job.row_count} row(s), {total} chunk(s) of {job.chunk_size}, mode={job.mode}",
        )
        logger.info(
            f"[{job.job_id}] Job submitted: {job.row_count} rows, {total} chunks, "
            f"model={job.model}, mode={job.mode}"
        )
        return job

    def dry_run(
        self,
        csv_bytes: bytes,
        input_col: str,
        prompt: str = DEFAULT_PROMPT,
        model: str = MODEL,
        chunk_size=DEFAULT_CHUNK_SIZE,
        concurrency=DEFAULT_CONCURRENCY,
        mode: str = MODE_DIRECT,
        reasoning_effort: str = "",
        verbosity: str = "",
        max_rows: Optional[int] = None,
        filename: str = "",
    ) -> dict:
        """Plan a job without storing anything or calling the model."""
        job, rows = self._prepare(
            csv_bytes, "dry-run", input_col, prompt, model, chunk_size,
            concurrency, mode, reasoning_effort, verbosity, max_rows, filename,
        )
        chunks = plan_chunks(rows, job.chunk_size)
        return {
            "dry_run":       True,
            "mode":          job.mode,
            "model":         job.model,
            "headers":       job.headers,
            "row_count":     job.row_count,
            "chunk_size":    job.chunk_size,
            "total_chunks":  len(chunks),
            "concurrency":   self.effective_concurrency(job.concurrency),
            "first_request": build_request_body(job, chunks[0]) if chunks else None,
        }

    # ── Shared helpers ─────────────────────────────────────────────────────────

    async def _load_job(self, job_id: str) -> tuple[JobConfig, list[str], list[Row]]:
        job = await self.store.load_job_config(job_id)
        if job is None:
            raise MissingMetadataError(f"Job config not found for {job_id}")
        source = await self.store.load_source(job_id)
        if source is None:
            raise MissingSourceDataError(f"Source CSV not found for {job_id}")
        try:
            headers, rows = parse_rows(source, job.input_col, max_rows=job.row_count)
        except ValueError as exc:
            raise MissingSourceDataError(f"Source CSV for {job_id} is unreadable: {exc}") from exc
        return job, headers, rows

    async def _fail(self, reporter: StatusReporter, error: Exception) -> JobStatus:
        return await reporter.update(
            status=STATUS_FAILED,
            last_error=str(error) or type(error).__name__,
            last_error_status=getattr(error, "status", None),
            finished_at=utc_now_iso(),
            message=f"failed: {error}",
        )

    async def _finalize(
        self,
        job: JobConfig,
        headers: list[str],
        rows: list[Row],
        total: int,
        reporter: StatusReporter,
    ) -> JobStatus:
        partials = await self.store.load_partials(job.job_id, total)
        table = reconcile(headers, rows, partials, job.chunk_size, total)
        await self.store.save_artifact(job.job_id, table_to_csv(table.headers, table.rows))

        added = len(table.headers) - len(headers)
        logger.info(f"[{job.job_id}] Artifact stored: {len(rows)} rows, {added} new column(s).")
        return await reporter.update(
            status=STATUS_READY,
            completed_chunks=total,
            processed_rows=len(rows),
            total_chunks=total,
            finished_at=utc_now_iso(),
            message=f"ready: {len(rows)} row(s) merged from {len(partials)}/{total} chunk(s)",
        )

    async def _gated(self, job_id: str, work) -> Optional[JobStatus]:
        """Run work() under the in-process guard and the store lease; None if either declines."""
        if job_id in self._active:
            logger.info(f"[{job_id}] Already running in this process: skipping.")
            return None
        self._active.add(job_id)
        try:
            async with self.leases.held(job_id) as acquired:
                if not acquired:
                    return None
                return await work()
        finally:
            self._active.discard(job_id)

    async def process_job(self, job_id: str) -> Optional[JobStatus]:
        """Run a job in its own mode. Used for both first runs and resumes."""
        job = await self.store.load_job_config(job_id)
        if job is not None and job.mode == MODE_BATCH:
            if await self.store.load_batch_record(job_id) is not None:
                return await self.collect_batch(job_id, retry_failed=True)
            return await self.start_batch(job_id)
        return await self.run_job(job_id)

    # ── Direct mode ────────────────────────────────────────────────────────────

    async def run_job(self, job_id: str) -> Optional[JobStatus]:
        """
        Process (or resume) a direct-mode job to completion.

        Returns the final status, or None when another invocation holds the job.
        """
        return await self._gated(job_id, lambda: self._run_direct(job_id))

    async def _run_direct(self, job_id: str) -> JobStatus:
        reporter = StatusReporter(self.store, job_id, self.event_limit)
        try:
            job, headers, rows = await self._load_job(job_id)
        except JobDataError as exc:
            logger.error(f"[{job_id}] {exc}")
            return await self._fail(reporter, exc)

        current = await reporter.snapshot()
        if current is not None and current.status == STATUS_READY:
            logger.info(f"[{job_id}] Already ready: nothing to do.")
            return current

        chunks = plan_chunks(rows, job.chunk_size)
        total = len(chunks)
        done = {i for i in await self.store.list_partial_indices(job_id) if i < total}
        pending = [chunk.index for chunk in chunks if chunk.index not in done]

        await reporter.update(
            status=STATUS_RUNNING,
            total_chunks=total,
            row_count=len(rows),
            completed_chunks=len(done),
            processed_rows=processed_rows(len(done), job.chunk_size, len(rows)),
            message=(
                f"worker: start, {len(done)}/{total} chunk(s) already done"
                if done else f"worker: start, {total} chunk(s)"
            ),
        )

        completed = len(done)

        async def handle(index: int) -> None:
            nonlocal completed
            chunk = chunks[index]

            async def on_retry(attempt: int, error: CompletionError, delay: float) -> None:
                await reporter.update(
                    message=(
                        f"chunk#{index + 1}: {error.status or 'network'} → backoff "
                        f"{delay * 1000:.0f}ms (retry {attempt}/{self.retry_policy.retries})"
                    ),
                )

            text = await self.completion.complete(job, chunk, on_retry=on_retry)
            results = parse_chunk_output(text, chunk)
            await self.store.save_partial(job_id, ChunkResult(chunk_index=index, results=results))

            completed += 1
            count = completed
            if should_report(count, total):
                await reporter.update(
                    completed_chunks=count,
                    processed_rows=processed_rows(count, job.chunk_size, len(rows)),
                    message=f"chunk#{index + 1} done ({count}/{total})",
                )

        started = asyncio.get_running_loop().time()
        try:
            await run_worker_pool(pending, self.effective_concurrency(job.concurrency), handle)
        except CompletionError as exc:
            logger.error(f"[{job_id}] Aborting job: {exc}")
            return await self._fail(reporter, exc)
        except Exception as exc:
            logger.error(f"[{job_id}] Unhandled error in worker pool: {exc}", exc_info=True)
            return await self._fail(reporter, exc)

        elapsed = asyncio.get_running_loop().time() - started
        logger.info(f"[{job_id}] {len(pending)} chunk(s) processed in {elapsed:.1f}s.")
        return await self._finalize(job, headers, rows, total, reporter)

    # ── Batch mode ─────────────────────────────────────────────────────────────

    async def start_batch(self, job_id: str) -> Optional[JobStatus]:
        """Upload every chunk as one provider batch. None when another invocation holds the job."""
        return await self._gated(job_id, lambda: self._start_batch(job_id))

    async def _start_batch(self, job_id: str) -> JobStatus:
        reporter = StatusReporter(self.store, job_id, self.event_limit)
        if self.batch_client is None:
            return await self._fail(reporter, RuntimeError("batch mode is not configured on this server"))

        if await self.store.load_batch_record(job_id) is not None:
            logger.info(f"[{job_id}] Batch already submitted: skipping.")
            return await reporter.snapshot() or JobStatus(job_id=job_id)

        try:
            job, headers, rows = await self._load_job(job_id)
        except JobDataError as exc:
            logger.error(f"[{job_id}] {exc}")
            return await self._fail(reporter, exc)

        chunks = plan_chunks(rows, job.chunk_size)
        total = len(chunks)
        jsonl = build_batch_jsonl(job, chunks)

        try:
            file_id = await self.retry_policy.call(
                lambda: self.batch_client.upload_jsonl(jsonl, f"{job_id}.jsonl"),
                label=f"[{job_id}] batch upload",
            )
            batch = await self.retry_policy.call(
                lambda: self.batch_client.create_batch(file_id, {"job_id": job_id}),
                label=f"[{job_id}] batch create",
            )
        except CompletionError as exc:
            logger.error(f"[{job_id}] Batch submission failed: {exc}")
            return await self._fail(reporter, exc)

        batch_id = batch["id"]
        await self.store.save_batch_record(
            job_id,
            {"batch_id": batch_id, "input_file_id": file_id, "created_at": utc_now_iso()},
        )
        return await reporter.update(
            status=STATUS_RUNNING,
            batch_id=batch_id,
            total_chunks=total,
            row_count=len(rows),
            message=f"batch: submitted {batch_id} ({total} request(s))",
        )

    async def collect_batch(self, job_id: str, retry_failed: bool = False) -> Optional[JobStatus]:
        """
        Poll a batch-mode job once; when the provider is done, write partials
        and build the artifact.

        A ready job is never collected again. A failed one is re-collected only
        with retry_failed (the resume path); the periodic poll leaves it alone.

        Returns the current status, or None if the job has no batch record or
        another invocation holds it.
        """
        if await self.store.load_batch_record(job_id) is None:
            logger.info(f"[{job_id}] No batch record: nothing to collect.")
            return None

        current = await StatusReporter(self.store, job_id, self.event_limit).snapshot()
        if current is not None and current.status in TERMINAL_STATUSES:
            if not (retry_failed and current.status == STATUS_FAILED):
                return current
            logger.info(f"[{job_id}] Re-collecting failed batch job.")
        return await self._gated(job_id, lambda: self._collect(job_id))

    async def _download(self, job_id: str, file_id: Optional[str]) -> Optional[str]:
        if not file_id:
            return None
        return await self.retry_policy.call(
            lambda: self.batch_client.download_file(file_id),
            label=f"[{job_id}] batch download {file_id}",
        )

    async def _poll_failed(self, reporter: StatusReporter, exc: CompletionError) -> JobStatus:
        if is_retryable_status(exc.status):
            return await reporter.update(message=f"batch: poll failed, will retry ({exc})")
        return await self._fail(reporter, exc)

    async def _collect(self, job_id: str) -> JobStatus:
        reporter = StatusReporter(self.store, job_id, self.event_limit)
        if self.batch_client is None:
            return await self._fail(reporter, RuntimeError("batch mode is not configured on this server"))

        try:
            job, headers, rows = await self._load_job(job_id)
        except JobDataError as exc:
            logger.error(f"[{job_id}] {exc}")
            return await self._fail(reporter, exc)

        record = await self.store.load_batch_record(job_id) or {}
        batch_id = record.get("batch_id", "")
        chunks = plan_chunks(rows, job.chunk_size)
        total = len(chunks)

        try:
            batch = await self.retry_policy.call(
                lambda: self.batch_client.get_batch(batch_id),
                label=f"[{job_id}] batch status",
            )
        except CompletionError as exc:
            logger.warning(f"[{job_id}] Batch status check failed: {exc}")
            return await self._poll_failed(reporter, exc)

        state = batch.get("status", "unknown")
        counts = batch.get("request_counts") or {}
        finished = int(counts.get("completed") or 0) + int(counts.get("failed") or 0)

        if state not in BATCH_DONE_STATES + BATCH_FAILED_STATES:
            count = min(finished, total)
            return await reporter.update(
                status=STATUS_RUNNING,
                completed_chunks=count,
                processed_rows=processed_rows(count, job.chunk_size, len(rows)),
                message=f"batch: {state} ({finished}/{counts.get('total') or total})",
            )

        try:
            output = await self._download(job_id, batch.get("output_file_id"))
            errors = await self._download(job_id, batch.get("error_file_id"))
        except CompletionError as exc:
            logger.warning(f"[{job_id}] Batch download failed: {exc}")
            return await self._poll_failed(reporter, exc)

        parsed = parse_batch_output(output, errors)
        batch_error = _batch_error_message(batch)
        existing = set(await self.store.list_partial_indices(job_id))

        failed = 0
        for chunk in chunks:
            if chunk.index in existing:
                continue
            line = parsed.get(chunk.index)
            if line is not None and line.text is not None:
                partial = ChunkResult(chunk_index=chunk.index, results=parse_chunk_output(line.text, chunk))
            else:
                message = (line.error if line else None) or batch_error or "no result returned for chunk"
                partial = _error_partial(chunk, message)
                failed += 1
            await self.store.save_partial(job_id, partial)

        if failed:
            logger.warning(f"[{job_id}] {failed}/{total} batch chunk(s) failed: rows marked {ERROR_MARKER}.")
            await reporter.update(message=f"batch: {failed}/{total} chunk(s) failed, rows marked {ERROR_MARKER}")
        return await self._finalize(job, headers, rows, total, reporter)

    async def collect_pending_batches(self) -> int:
        """Poll every non-terminal batch-mode job once. Returns how many were polled."""
        polled = 0
        for job_id in await self.store.list_batch_jobs():
            data = await self.store.load_status(job_id)
            if data and data.get("status") in TERMINAL_STATUSES:
                continue
            try:
                await self.collect_batch(job_id)
                polled += 1
            except Exception as exc:
                logger.error(f"[{job_id}] Batch poll crashed: {exc}", exc_info=True)
        return polled

    # ── Query / download ───────────────────────────────────────────────────────

    async def get_status(self, job_id: str, limit: int = STATUS_EVENT_LIMIT) -> Optional[dict]:
        data = await self.store.load_status(job_id)
        job = await self.store.load_job_config(job_id)
        if data is None and job is None:
            return None

        status = JobStatus.from_dict(data) if data else JobStatus(job_id=job_id)
        events = status.events[-limit:] if limit > 0 else []
        return {
            "job_id":           job_id,
            "status":           status.status,
            "ready":            status.status == STATUS_READY,
            "completed_chunks": status.completed_chunks,
            "total_chunks":     status.total_chunks,
            "processed_rows":   status.processed_rows,
            "row_count":        status.row_count or (job.row_count if job else 0),
            "events":           events,
            "error":            status.last_error if status.status == STATUS_FAILED else None,
            "mode":             job.mode if job else MODE_DIRECT,
        }

    def _render(self, job: JobConfig, table: MergedTable, fmt: str, partial: bool) -> Artifact:
        if fmt not in FORMATS:
            raise ValueError(f"Unknown format '{fmt}'. Expected one of: {', '.join(FORMATS)}.")
        if fmt == FORMAT_XLSX:
            content = build_excel(table.headers, table.rows)
        else:
            content = table_to_csv(table.headers, table.rows)
        return Artifact(
            content=content,
            media_type=_MEDIA_TYPES[fmt],
            filename=get_output_filename(job.job_id, fmt, job.filename, partial=partial),
        )

    async def get_final_artifact(self, job_id: str, fmt: str = FORMAT_CSV) -> Optional[Artifact]:
        """The stored merged table; None unless the job is ready."""
        data = await self.store.load_status(job_id)
        if not data or data.get("status") != STATUS_READY:
            return None
        job = await self.store.load_job_config(job_id)
        stored = await self.store.load_artifact(job_id)
        if job is None or stored is None:
            return None
        if fmt == FORMAT_CSV:
            return Artifact(
                content=stored,
                media_type=_MEDIA_TYPES[FORMAT_CSV],
                filename=get_output_filename(job_id, FORMAT_CSV, job.filename),
            )
        headers, rows = await asyncio.to_thread(read_table, stored)
        return await asyncio.to_thread(self._render, job, MergedTable(headers, rows), fmt, False)

    async def get_partial_artifact(self, job_id: str, fmt: str = FORMAT_CSV) -> Optional[Artifact]:
        """Reconcile whatever partials exist right now. None if the job is unknown."""
        try:
            job, headers, rows = await self._load_job(job_id)
        except JobDataError as exc:
            logger.warning(f"[{job_id}] Partial download unavailable: {exc}")
            return None
        total = count_chunks(len(rows), job.chunk_size)
        partials = await self.store.load_partials(job_id, total)
        table = reconcile(headers, rows, partials, job.chunk_size, total)
        return await asyncio.to_thread(self._render, job, table, fmt, True)
