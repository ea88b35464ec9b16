"""
completion_client.py

Async OpenAI Responses API client.

One call = one chunk. The request carries the user's prompt plus a fixed
output contract, then the chunk rows as a JSON object:

    system: <prompt> + OUTPUT_CONTRACT
    user:   "Return only a json object as specified..."
    user:   {"rows": [{"id": 0, "text": "..."}, ...]}

The response text is returned raw; decoding into per-row results is
output_parser's job. Failures surface as CompletionError with the HTTP
status (None for network-level errors) so RetryPolicy can classify them.

The client is constructed explicitly and handed to the engine: there is no
module-level shared instance.
"""

import json
import logging
import re
from typing import Optional

import httpx

from errors import CompletionError
from models import Chunk, JobConfig

logger = logging.getLogger(__name__)

OUTPUT_CONTRACT = (
    ' You will receive a json object {"rows":[{"id":number,"text":string},...]}.'
    ' For each row, follow the instructions above and produce either'
    ' {"id": same id, "result": string} or, when the instructions ask for several'
    ' named fields, {"id": same id, "cols": {"<field name>": string, ...}}.'
    ' The output must be valid json. Return ONLY a json object exactly like:'
    ' {"results":[{"id":number,"result":string} or {"id":number,"cols":{...}},...]}'
    ' with one entry per input row, in the SAME ORDER as input.'
    ' Do not include any commentary.'
)

_REMINDER = "Return only a json object as specified. The output must be valid json."


# ── Model capability checks ────────────────────────────────────────────────────

def supports_temperature(model: str) -> bool:
    return not re.match(r"^gpt-5(\b|[-_])", model)


def supports_reasoning(model: str) -> bool:
    return bool(re.match(r"^o\d", model, re.IGNORECASE)) or model.startswith(("o", "gpt-5"))


def supports_verbosity(model: str) -> bool:
    return model.startswith("gpt-5")


def build_request_body(job: JobConfig, chunk: Chunk) -> dict:
    """Responses API request body for one chunk. Shared with batch JSONL lines."""
    body: dict = {
        "model": job.model,
        "input": [
            {"role": "system", "content": f"{job.prompt}{OUTPUT_CONTRACT}"},
            {"role": "user", "content": _REMINDER},
            {"role": "user", "content": json.dumps(chunk.payload(), ensure_ascii=False)},
        ],
        "text": {"format": {"type": "json_object"}},
    }
    if supports_temperature(job.model):
        body["temperature"] = 0
    if job.reasoning_effort and supports_reasoning(job.model):
        body["reasoning"] = {"effort": job.reasoning_effort}
    if job.verbosity and supports_verbosity(job.model):
        body["text"]["verbosity"] = job.verbosity
    return body


def extract_output_text(data: dict) -> str:
    """
    Pull the assistant text out of a Responses API payload.

    The SDK convenience field `output_text` is used when present; otherwise
    every output_text content part of every message item is concatenated.
    """
    if isinstance(data.get("output_text"), str):
        return data["output_text"]

    parts: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict) and content.get("type") == "output_text":
                parts.append(str(content.get("text", "")))
    return "".join(parts)


class CompletionClient:
    """
    Thin async wrapper over POST /v1/responses.

    Usage:
        client = CompletionClient(api_key=OPENAI_API_KEY)
        raw_text = await client.complete(job, chunk)
        await client.aclose()
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        mock: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.mock = mock
        # Timeout: generous read: a 200-row chunk can take a while to generate.
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(connect=30.0, read=300.0, write=30.0, pool=10.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )

    async def complete(self, job: JobConfig, chunk: Chunk) -> str:
        """
        Run one chunk through the model and return the raw output text.

        Raises:
            CompletionError: HTTP error (status set) or network error (status None).
        """
        if self.mock:
            logger.info(f"MOCK_AI enabled: echoing chunk#{chunk.index + 1} without an API call.")
            return json.dumps({"results": [{"id": r.id, "result": r.text} for r in chunk.rows]})

        try:
            response = await self._http.post("/v1/responses", json=build_request_body(job, chunk))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CompletionError(
                f"OpenAI HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                status=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise CompletionError(f"OpenAI request failed: {exc}", status=None) from exc

        try:
            data = response.json()
        except ValueError as exc:
            # Truncated or proxied body: status None.
            raise CompletionError(f"OpenAI returned a non-JSON body: {exc}", status=None) from exc

        return extract_output_text(data)

    async def aclose(self) -> None:
        await self._http.aclose()
