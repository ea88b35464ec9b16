"""
_db.py

Postgres persistence layer: a plain key/value blob table.

All SQL lives here. progress_store.PostgresBlobStore calls these functions
(from worker threads via asyncio.to_thread): nothing else touches psycopg2.

Schema
------
blobs
    key           TEXT PRIMARY KEY       -- e.g. jobs/<id>.status.json
    value         BYTEA NOT NULL
    content_type  TEXT
    updated_at    TIMESTAMPTZ DEFAULT now()

The table offers only get / put / list / delete. With no conditional write,
the job lease built on top of it is advisory.

Connection
----------
Uses psycopg2.pool.ThreadedConnectionPool: safe for concurrent
asyncio.to_thread callers. Pool size is tuned to MAX_DIRECT_CONCURRENCY.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from config import DATABASE_URL, MAX_DIRECT_CONCURRENCY

logger = logging.getLogger(__name__)

# ── Connection pool ────────────────────────────────────────────────────────────
# minconn=2 keeps warm connections ready.
# maxconn = workers + 4 headroom for status/download reads and the lease
# heartbeat running alongside chunk writes.

_pool: Optional[ThreadedConnectionPool] = None


def _get_pool() -> ThreadedConnectionPool:
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialised. Call init_db() first.")
    return _pool


@contextmanager
def _conn():
    """Context manager: borrow a connection from the pool, return it after use."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


# ── Schema bootstrap ───────────────────────────────────────────────────────────

def init_db(dsn: str = DATABASE_URL) -> None:
    """
    Create connection pool and ensure schema exists.
    Called once at server startup from main.py lifespan.
    Safe to call on an already-initialised DB (uses CREATE TABLE IF NOT EXISTS).
    """
    global _pool
    _pool = ThreadedConnectionPool(
        minconn=2,
        maxconn=MAX_DIRECT_CONCURRENCY + 4,
        dsn=dsn,
    )
    logger.info("Postgres connection pool created.")

    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS blobs (
                    key          TEXT PRIMARY KEY,
                    value        BYTEA       NOT NULL,
                    content_type TEXT,
                    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
    logger.info("Database schema verified.")


def close_db() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


# ── Blob operations ────────────────────────────────────────────────────────────

def db_put_blob(key: str, value: bytes, content_type: Optional[str] = None) -> None:
    """Insert or overwrite one blob (last write wins)."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO blobs (key, value, content_type, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (key) DO UPDATE SET
                    value        = EXCLUDED.value,
                    content_type = EXCLUDED.content_type,
                    updated_at   = EXCLUDED.updated_at
                """,
                (key, psycopg2.Binary(value), content_type),
            )


def db_get_blob(key: str) -> Optional[bytes]:
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT value FROM blobs WHERE key = %s", (key,))
            row = cur.fetchone()
            return bytes(row[0]) if row else None


def db_list_keys(prefix: str) -> list[str]:
    """All keys starting with prefix, sorted. No LIKE, so '%' / '_' need no escaping."""
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT key FROM blobs WHERE left(key, length(%s)) = %s ORDER BY key",
                (prefix, prefix),
            )
            return [r[0] for r in cur.fetchall()]


def db_delete_blob(key: str) -> None:
    with _conn() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM blobs WHERE key = %s", (key,))
