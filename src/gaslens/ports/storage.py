# gaslens/ports/storage.py
from __future__ import annotations

from datetime import date
from typing import Iterable, Protocol
from ..domain.models import ChunkRec, EnrichedEvent


class EventStore(Protocol):
    """Port for the idempotent event store keyed by (tx_hash, log_index)."""

    async def upsert(self, events: Iterable[EnrichedEvent]) -> int:
        """Merge events into the store; a repeated key replaces the earlier row. Returns rows written."""

    async def count(self) -> int:
        """Number of distinct events."""

    async def last_block(self) -> int | None:
        """Highest persisted block number, or None when empty."""

    async def block_range(self) -> tuple[int, int] | None:
        """(min, max) persisted block number, or None when empty."""

    async def date_range(self) -> tuple[date, date] | None:
        """(min, max) UTC event date, or None when empty."""

    async def events(self) -> list[EnrichedEvent]:
        """Every current event ordered by (block_number, log_index)."""


class ManifestSink(Protocol):
    """Port for appending run/chunk status records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""
