from __future__ import annotations
from ..domain.models import BlockRange

SECONDS_PER_DAY = 24 * 60 * 60


def lookback_blocks(days: int, block_time_s: int) -> int:
    """Block count covering ``days`` at the chain's average block interval (30d @ 12s -> 216_000)."""
    if block_time_s <= 0:
        raise ValueError("block_time_s must be > 0")
    return days * (SECONDS_PER_DAY // block_time_s)


def starting_block(last_persisted: int | None, head: int, lookback: int) -> int:
    if last_persisted is not None:
        return last_persisted + 1
    return max(0, head - lookback)


def next_batch(current: int, batch_size: int, head: int) -> BlockRange:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return BlockRange(current, min(current + batch_size - 1, head))

