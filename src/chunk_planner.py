"""
chunk_planner.py

Partition rows into fixed-size, ordered chunks.

Chunk i always covers row ids [i*K, min((i+1)*K, N)); only the last chunk
may be shorter. Planning is pure, so re-planning the same rows on resume
yields exactly the same chunk indices as the first run.
"""

from config import MAX_CHUNK_SIZE, MIN_CHUNK_SIZE
from models import Chunk, Row


def clamp_chunk_size(value) -> int:
    """Coerce user input into [MIN_CHUNK_SIZE, MAX_CHUNK_SIZE]."""
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = MIN_CHUNK_SIZE
    return max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, size))


def count_chunks(row_count: int, chunk_size: int) -> int:
    return -(-row_count // chunk_size) if row_count > 0 else 0


def chunk_bounds(index: int, chunk_size: int, row_count: int) -> tuple[int, int]:
    start = index * chunk_size
    return start, min(start + chunk_size, row_count)


def plan_chunks(rows: list[Row], chunk_size: int) -> list[Chunk]:
    if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(
            f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}, got {chunk_size}"
        )
    chunks = []
    for i in range(count_chunks(len(rows), chunk_size)):
        start, end = chunk_bounds(i, chunk_size, len(rows))
        chunks.append(Chunk(index=i, rows=tuple(rows[start:end])))
    return chunks


def processed_rows(completed_chunks: int, chunk_size: int, row_count: int) -> int:
    return min(completed_chunks * chunk_size, row_count)
