"""
Shared fixtures.

Environment is pinned before any project module is imported: config.py
validates at import time, and the test suite never talks to OpenAI or
Postgres.
"""

import os

os.environ["MOCK_AI"] = "true"
os.environ["STORE_BACKEND"] = "memory"
os.environ["ENV"] = "dev"

import json
import random

import pytest

from batch_processor import JobEngine
from lease import LeaseManager
from progress_store import MemoryBlobStore, ProgressStore
from retry import RetryPolicy


async def no_sleep(_seconds: float) -> None:
    return None


def make_csv(headers: list[str], rows: list[list[str]]) -> bytes:
    lines = [",".join(headers)] + [",".join(r) for r in rows]
    return ("\n".join(lines) + "\n").encode("utf-8")


def upper_echo(chunk) -> str:
    return json.dumps(
        {"results": [{"id": r.id, "result": r.text.upper()} for r in chunk.rows]},
        ensure_ascii=False,
    )


class ScriptedClient:
    """
    Completion client driven by a per-chunk script.

    script = {chunk_index: [outcome, ...]} where each outcome is a str
    (returned) or an Exception (raised). Once a chunk's script runs out,
    or for chunks with no script, `fallback(chunk)` answers.
    """

    def __init__(self, script=None, fallback=upper_echo):
        self.script = {i: list(v) for i, v in (script or {}).items()}
        self.fallback = fallback
        self.calls: list[int] = []

    async def complete(self, job, chunk) -> str:
        self.calls.append(chunk.index)
        pending = self.script.get(chunk.index)
        if pending:
            outcome = pending.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return self.fallback(chunk)


@pytest.fixture
def store():
    return ProgressStore(MemoryBlobStore())


@pytest.fixture
def fast_policy():
    return RetryPolicy(retries=5, base_delay=0.3, max_delay=5.0, sleep=no_sleep, rng=random.Random(7))


@pytest.fixture
def make_engine(store, fast_policy):
    def _make(client=None, batch_client=None, **kwargs):
        return JobEngine(
            store,
            client or ScriptedClient(),
            batch_client=batch_client,
            lease_manager=kwargs.pop("lease_manager", LeaseManager(store, ttl=60, heartbeat_interval=10, settle=0.01)),
            retry_policy=kwargs.pop("retry_policy", fast_policy),
            **kwargs,
        )
    return _make
