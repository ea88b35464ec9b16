"""
lease.py

Job-scoped worker lease: at most one live worker per job, best effort.

    unlocked ──acquire()──▶ held (heartbeat task running) ──release()──▶ released

acquire() reads the lease record. A record younger than its TTL means another
worker is alive, so the call declines. Otherwise it writes {ts: now, owner},
waits `settle` seconds, reads it back (losing to whichever write landed last),
and starts a heartbeat that rewrites ts every `heartbeat_interval` seconds.
release() stops the heartbeat and waits for a renewal already in flight
before deleting the record, so a late renewal cannot resurrect the lease.

This is an advisory lock built on a store without compare-and-swap: two
invocations can both proceed when one write lands more than `settle` seconds
after the other has read its own record back. Closing that window needs a
conditional put in the store. TTL expiry is the only recovery path for a
worker that died without releasing.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from config import LEASE_HEARTBEAT_SECONDS, LEASE_SETTLE_SECONDS, LEASE_TTL_SECONDS

logger = logging.getLogger(__name__)


class LeaseManager:
    def __init__(
        self,
        store,
        ttl: float = LEASE_TTL_SECONDS,
        heartbeat_interval: float = LEASE_HEARTBEAT_SECONDS,
        settle: float = LEASE_SETTLE_SECONDS,
        clock: Callable[[], float] = time.time,
        owner: Optional[str] = None,
    ):
        if heartbeat_interval >= ttl:
            raise ValueError(
                f"heartbeat_interval ({heartbeat_interval}s) must be shorter than ttl ({ttl}s)"
            )
        self.store = store
        self.ttl = ttl
        self.heartbeat_interval = heartbeat_interval
        self.settle = settle
        self.owner = owner or uuid.uuid4().hex
        self._clock = clock
        self._heartbeats: dict[str, asyncio.Task] = {}
        self._renewals: dict[str, asyncio.Future] = {}

    def is_live(self, lease: Optional[dict]) -> bool:
        if not lease:
            return False
        try:
            ts = float(lease["ts"])
            ttl = float(lease.get("ttl", self.ttl))
        except (KeyError, TypeError, ValueError):
            return False
        return self._clock() - ts < ttl

    def _record(self, job_id: str) -> dict:
        return {"job_id": job_id, "ts": self._clock(), "ttl": self.ttl, "owner": self.owner}

    async def acquire(self, job_id: str) -> bool:
        current = await self.store.load_lease(job_id)
        if self.is_live(current) and current.get("owner") != self.owner:
            age = self._clock() - float(current["ts"])
            logger.info(
                f"[{job_id}] Lease held by {current.get('owner')} ({age:.1f}s old): declining."
            )
            return False

        await self.store.save_lease(job_id, self._record(job_id))
        if self.settle > 0:
            await asyncio.sleep(self.settle)

        written = await self.store.load_lease(job_id)
        if written and written.get("owner") != self.owner:
            logger.info(f"[{job_id}] Lost lease race to {written.get('owner')}: declining.")
            return False

        self._heartbeats[job_id] = asyncio.create_task(self._heartbeat(job_id))
        logger.info(f"[{job_id}] Lease acquired by {self.owner} (ttl={self.ttl:.0f}s).")
        return True

    async def renew(self, job_id: str) -> None:
        await self.store.save_lease(job_id, self._record(job_id))

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            renewal = asyncio.ensure_future(self.renew(job_id))
            self._renewals[job_id] = renewal
            try:
                await asyncio.shield(renewal)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"[{job_id}] Lease heartbeat failed: {exc}")

    async def release(self, job_id: str) -> None:
        task = self._heartbeats.pop(job_id, None)
        renewal = self._renewals.pop(job_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # A renewal cut off mid-heartbeat is still writing; let it land first.
        if renewal is not None and not renewal.done():
            try:
                await renewal
            except Exception as exc:
                logger.warning(f"[{job_id}] Lease renewal failed during release: {exc}")

        try:
            await self.store.delete_lease(job_id)
            logger.info(f"[{job_id}] Lease released.")
        except Exception as exc:
            logger.warning(f"[{job_id}] Lease delete failed (TTL will expire it): {exc}")

    @asynccontextmanager
    async def held(self, job_id: str):
        """Yields True while holding the lease, False (and nothing to release) if declined."""
        acquired = await self.acquire(job_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(job_id)
