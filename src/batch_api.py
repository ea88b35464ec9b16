"""
batch_api.py

OpenAI Batch API client for batch-mode jobs.

Flow for one job:

    build_batch_jsonl(job, chunks)     one JSONL line per chunk:
        {"custom_id": "chunk-<index>", "method": "POST",
         "url": "/v1/responses", "body": <same body as a direct call>}
    upload_jsonl()        POST /v1/files (purpose=batch)     → input_file_id
    create_batch()        POST /v1/batches                   → batch_id
    get_batch()           GET  /v1/batches/{id}              → status, request_counts
    download_file()       GET  /v1/files/{id}/content        → output / error JSONL

parse_batch_output() turns output and error files into a per-chunk map of
(text, error). A chunk absent from both files is reported by the engine as
missing.

With mock=True no network calls are made: the batch completes immediately
and every row's result is its input text, mirroring CompletionClient's mock.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from completion_client import build_request_body, extract_output_text
from config import BATCH_COMPLETION_WINDOW
from errors import CompletionError
from models import Chunk, JobConfig

logger = logging.getLogger(__name__)

BATCH_ENDPOINT = "/v1/responses"

# Provider batch states
BATCH_DONE_STATES   = ("completed",)
BATCH_FAILED_STATES = ("failed", "expired", "cancelled")


def chunk_custom_id(chunk_index: int) -> str:
    return f"chunk-{chunk_index}"


def parse_custom_id(custom_id) -> Optional[int]:
    if not isinstance(custom_id, str) or not custom_id.startswith("chunk-"):
        return None
    tail = custom_id[len("chunk-"):]
    return int(tail) if tail.isdigit() else None


def build_batch_jsonl(job: JobConfig, chunks: list[Chunk]) -> bytes:
    lines = [
        json.dumps(
            {
                "custom_id": chunk_custom_id(chunk.index),
                "method":    "POST",
                "url":       BATCH_ENDPOINT,
                "body":      build_request_body(job, chunk),
            },
            ensure_ascii=False,
        )
        for chunk in chunks
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


@dataclass
class BatchLineResult:
    text: Optional[str] = None
    error: Optional[str] = None


def _parse_line(raw: dict) -> BatchLineResult:
    row_error = raw.get("error")
    if row_error:
        if isinstance(row_error, dict):
            code = row_error.get("code", "unknown")
            message = row_error.get("message", "Unknown error")
            return BatchLineResult(error=f"{code}: {message}")
        return BatchLineResult(error=str(row_error))

    response = raw.get("response") or {}
    status_code = response.get("status_code", 0)
    body = response.get("body") or {}

    if status_code != 200:
        detail = ""
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            detail = f": {body['error'].get('message', '')}"
        return BatchLineResult(error=f"HTTP {status_code}{detail}")

    return BatchLineResult(text=extract_output_text(body))


def parse_batch_output(*contents: Optional[str]) -> dict[int, BatchLineResult]:
    """
    Parse output / error JSONL files into {chunk_index: BatchLineResult}.

    A successful line wins over an error line for the same chunk.
    Unparseable lines are skipped with a warning.
    """
    results: dict[int, BatchLineResult] = {}
    for content in contents:
        if not content:
            continue
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning(f"Skipping unparseable batch line: {exc}")
                continue
            index = parse_custom_id(raw.get("custom_id"))
            if index is None:
                logger.warning(f"Skipping batch line with unknown custom_id: {raw.get('custom_id')!r}")
                continue
            parsed = _parse_line(raw)
            existing = results.get(index)
            if existing is None or (existing.text is None and parsed.text is not None):
                results[index] = parsed
    return results


class BatchApiClient:
    """
    Usage:
        client = BatchApiClient(api_key=OPENAI_API_KEY)
        file_id  = await client.upload_jsonl(jsonl_bytes, f"{job_id}.jsonl")
        batch    = await client.create_batch(file_id, {"job_id": job_id})
        batch    = await client.get_batch(batch["id"])
        content  = await client.download_file(batch["output_file_id"])
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        completion_window: str = BATCH_COMPLETION_WINDOW,
        mock: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.completion_window = completion_window
        self.mock = mock
        self._mock_files: dict[str, bytes] = {}
        self._mock_batches: dict[str, dict] = {}
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(connect=30.0, read=120.0, write=120.0, pool=10.0),
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CompletionError(
                f"OpenAI HTTP {exc.response.status_code} on {method} {url}: {exc.response.text[:500]}",
                status=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise CompletionError(f"OpenAI request failed on {method} {url}: {exc}", status=None) from exc
        return response

    async def _request_json(self, method: str, url: str, **kwargs) -> dict:
        response = await self._request(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise CompletionError(f"OpenAI returned a non-JSON body on {url}: {exc}", status=None) from exc

    async def upload_jsonl(self, content: bytes, filename: str) -> str:
        if self.mock:
            file_id = f"file-mock-{uuid.uuid4().hex[:12]}"
            self._mock_files[file_id] = content
            return file_id

        data = await self._request_json(
            "POST",
            "/v1/files",
            data={"purpose": "batch"},
            files={"file": (filename, content, "application/jsonl")},
        )
        logger.info(f"Batch input uploaded: {data.get('id')} ({len(content)} bytes)")
        return data["id"]

    async def create_batch(self, input_file_id: str, metadata: Optional[dict] = None) -> dict:
        if self.mock:
            return self._mock_create(input_file_id)

        payload = {
            "input_file_id":     input_file_id,
            "endpoint":          BATCH_ENDPOINT,
            "completion_window": self.completion_window,
        }
        if metadata:
            payload["metadata"] = metadata
        data = await self._request_json("POST", "/v1/batches", json=payload)
        logger.info(f"Batch created: {data.get('id')} (status={data.get('status')})")
        return data

    async def get_batch(self, batch_id: str) -> dict:
        if self.mock:
            batch = self._mock_batches.get(batch_id)
            if batch is None:
                raise CompletionError(f"Batch not found: {batch_id}", status=404)
            return dict(batch)
        return await self._request_json("GET", f"/v1/batches/{batch_id}")

    async def download_file(self, file_id: str) -> str:
        if self.mock:
            content = self._mock_files.get(file_id)
            if content is None:
                raise CompletionError(f"File not found: {file_id}", status=404)
            return content.decode("utf-8")
        response = await self._request("GET", f"/v1/files/{file_id}/content")
        return response.text

    def _mock_create(self, input_file_id: str) -> dict:
        lines = []
        for line in self._mock_files[input_file_id].decode("utf-8").splitlines():
            if not line.strip():
                continue
            request = json.loads(line)
            rows = json.loads(request["body"]["input"][-1]["content"])["rows"]
            echoed = json.dumps({"results": [{"id": r["id"], "result": r["text"]} for r in rows]})
            lines.append(json.dumps({
                "custom_id": request["custom_id"],
                "response":  {"status_code": 200, "body": {"output_text": echoed}},
                "error":     None,
            }))

        output_file_id = f"file-mock-{uuid.uuid4().hex[:12]}"
        self._mock_files[output_file_id] = "\n".join(lines).encode("utf-8")
        batch_id = f"batch_mock_{uuid.uuid4().hex[:12]}"
        self._mock_batches[batch_id] = {
            "id":             batch_id,
            "status":         "completed",
            "input_file_id":  input_file_id,
            "output_file_id": output_file_id,
            "error_file_id":  None,
            "request_counts": {"total": len(lines), "completed": len(lines), "failed": 0},
        }
        logger.info(f"MOCK_AI enabled: batch {batch_id} completed with {len(lines)} echoed request(s).")
        return dict(self._mock_batches[batch_id])

    async def aclose(self) -> None:
        await self._http.aclose()
