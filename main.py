"""
main.py

FastAPI entry point for the CSV completion job service.

Routes:
    GET  /health                      liveness probe
    POST /jobs                        upload CSV + prompt → job (202) or plan (dry_run)
    GET  /jobs/{job_id}/status        progress counters + recent events
    POST /jobs/{job_id}/resume        re-run a job; finished chunks are skipped
    POST /jobs/{job_id}/collect       poll a batch-mode job once
    GET  /jobs/{job_id}/download      merged table, CSV or XLSX (?partial=true while running)

The engine is built once in the lifespan and kept on app.state. Batch-mode
jobs are also polled by a lifespan task every BATCH_POLL_SECONDS.

Production process management:
    Run under Gunicorn + UvicornWorker.
    For local dev only, python main.py still works.
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

# Ensure src/ is on the path so all module imports resolve
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from _db import close_db, init_db
from batch_api import BatchApiClient
from batch_processor import FORMAT_CSV, FORMATS, JobEngine
from chunk_planner import count_chunks
from completion_client import CompletionClient
from config import (
    BATCH_POLL_SECONDS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_PROMPT,
    MAX_FILE_SIZE_MB,
    MOCK_AI,
    MODEL,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    STATUS_EVENT_LIMIT,
    STORE_BACKEND,
)
from models import MODE_BATCH, MODE_DIRECT, STATUS_READY
from progress_store import MemoryBlobStore, PostgresBlobStore, ProgressStore


# ── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Rate Limiter ───────────────────────────────────────────────────────────────

_limiter = Limiter(key_func=get_remote_address)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded. {exc.detail}"},
    )


# ── Upload limits ──────────────────────────────────────────────────────────────

_MAX_FILE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024


# ── Background work ────────────────────────────────────────────────────────────

async def _process_job_background(engine: JobEngine, job_id: str) -> None:
    """Background coroutine that drives one job run."""
    try:
        await engine.process_job(job_id)
    except Exception as exc:
        logger.error(f"[{job_id}] Background task crashed: {exc}", exc_info=True)


async def _batch_poll_task(engine: JobEngine) -> None:
    """Poll every unfinished batch-mode job each BATCH_POLL_SECONDS."""
    while True:
        await asyncio.sleep(BATCH_POLL_SECONDS)
        try:
            polled = await engine.collect_pending_batches()
            if polled:
                logger.info(f"Batch poll: checked {polled} job(s).")
        except Exception as exc:
            logger.warning(f"Batch poll error: {exc}")


# ── App lifecycle ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    if STORE_BACKEND == "postgres":
        await asyncio.to_thread(init_db)
        blobs = PostgresBlobStore()
    else:
        logger.warning("STORE_BACKEND=memory: jobs are lost on restart.")
        blobs = MemoryBlobStore()

    completion_client = CompletionClient(OPENAI_API_KEY, base_url=OPENAI_BASE_URL, mock=MOCK_AI)
    batch_client = BatchApiClient(OPENAI_API_KEY, base_url=OPENAI_BASE_URL, mock=MOCK_AI)
    engine = JobEngine(ProgressStore(blobs), completion_client, batch_client=batch_client)
    app.state.engine = engine

    poll_task = asyncio.create_task(_batch_poll_task(engine))
    logger.info(f"CSV completion API started (store={STORE_BACKEND}, mock={MOCK_AI}).")
    yield

    poll_task.cancel()
    await completion_client.aclose()
    await batch_client.aclose()
    if STORE_BACKEND == "postgres":
        close_db()
    logger.info("CSV completion API shutting down.")


# ── App setup ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="CSV Completion Jobs",
    description="Runs a prompt over every row of a CSV in resumable, concurrent chunks.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = _limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

# CORS: restrict origins in production via ALLOWED_ORIGINS env var.
# Example: ALLOWED_ORIGINS=https://yourapp.com,https://admin.yourapp.com
_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


def _engine(request: Request) -> JobEngine:
    return request.app.state.engine


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health", include_in_schema=False)
async def health_check():
    """Health probe. Used by load balancers and Docker HEALTHCHECK."""
    return {"status": "ok"}


@app.post("/jobs")
@_limiter.limit("20/minute")
async def submit_job(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    input_col: str = Form(...),
    prompt: str = Form(DEFAULT_PROMPT),
    model: str = Form(MODEL),
    chunk_size: int = Form(DEFAULT_CHUNK_SIZE),
    concurrency: int = Form(DEFAULT_CONCURRENCY),
    reasoning_effort: str = Form(""),
    verbosity: str = Form(""),
    mode: str = Form(MODE_DIRECT),
    max_rows: Optional[int] = Form(None),
    dry_run: bool = Form(False),
):
    """
    Accept one CSV and start processing it.
    Rate limited to 20 requests / IP / minute.
    Returns: { "job_id", "mode", "row_count", "total_chunks" } with 202,
             or the plan preview with 200 when dry_run=true.
    """
    content = await file.read()

    if not content:
        raise HTTPException(status_code=400, detail=f"File '{file.filename}' is empty.")

    # File size guard
    if len(content) > _MAX_FILE_BYTES:
        raise HTTPException(
            status_code=413,
            detail=(
                f"'{file.filename}' is too large "
                f"({len(content) // (1024*1024)} MB). "
                f"Maximum allowed: {MAX_FILE_SIZE_MB} MB."
            ),
        )

    engine = _engine(request)
    options = dict(
        input_col=input_col.strip(),
        prompt=prompt,
        model=model,
        chunk_size=chunk_size,
        concurrency=concurrency,
        mode=mode.strip().lower(),
        reasoning_effort=reasoning_effort.strip(),
        verbosity=verbosity.strip(),
        max_rows=max_rows if max_rows and max_rows > 0 else None,
        filename=file.filename or "",
    )

    try:
        if dry_run:
            return JSONResponse(content=engine.dry_run(content, **options))
        job = await engine.submit_job(content, **options)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    background_tasks.add_task(_process_job_background, engine, job.job_id)

    return JSONResponse(
        content={
            "job_id":       job.job_id,
            "mode":         job.mode,
            "row_count":    job.row_count,
            "total_chunks": count_chunks(job.row_count, job.chunk_size),
        },
        status_code=202,
    )


@app.get("/jobs/{job_id}/status")
async def get_status(request: Request, job_id: str, limit: int = Query(STATUS_EVENT_LIMIT, ge=0)):
    """Poll job processing status."""
    payload = await _engine(request).get_status(job_id, limit=limit)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    return JSONResponse(content=payload)


@app.post("/jobs/{job_id}/resume")
async def resume_job(request: Request, job_id: str, background_tasks: BackgroundTasks):
    """Re-invoke the worker. Chunks with a stored partial are not sent again."""
    engine = _engine(request)
    payload = await engine.get_status(job_id, limit=0)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    if payload["ready"]:
        raise HTTPException(status_code=409, detail="Job is already ready.")

    background_tasks.add_task(_process_job_background, engine, job_id)
    logger.info(f"[{job_id}] Resume requested.")
    return JSONResponse(content={"job_id": job_id, "status": "resuming"}, status_code=202)


@app.post("/jobs/{job_id}/collect")
async def collect_job(request: Request, job_id: str):
    """Poll a batch-mode job once; builds the artifact when the provider is done."""
    engine = _engine(request)
    payload = await engine.get_status(job_id, limit=0)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    if payload["mode"] != MODE_BATCH:
        raise HTTPException(status_code=409, detail="Only batch-mode jobs can be collected.")

    await engine.collect_batch(job_id)
    return JSONResponse(content=await engine.get_status(job_id))


@app.get("/jobs/{job_id}/download")
async def download_result(
    request: Request,
    job_id: str,
    partial: bool = False,
    format: str = Query(FORMAT_CSV),
):
    """
    Download the merged table.
    Without partial, only available when job status is 'ready'.
    """
    fmt = format.lower()
    if fmt not in FORMATS:
        raise HTTPException(status_code=400, detail=f"Unknown format '{format}'. Use csv or xlsx.")

    engine = _engine(request)
    payload = await engine.get_status(job_id, limit=0)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")

    if partial:
        artifact = await engine.get_partial_artifact(job_id, fmt)
    else:
        if payload["status"] != STATUS_READY:
            raise HTTPException(
                status_code=409,
                detail=f"Job is not ready yet. Current status: '{payload['status']}'.",
            )
        artifact = await engine.get_final_artifact(job_id, fmt)

    if artifact is None:
        raise HTTPException(status_code=404, detail="No result is available for this job.")

    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "Content-Length": str(len(artifact.content)),
        },
    )


# ── Entry point ────────────────────────────────────────────────────────────────
# In production, Gunicorn is used.
# This block is for local dev only: python main.py

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
