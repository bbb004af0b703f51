from __future__ import annotations
import asyncio, glob, logging, os
from datetime import date
from typing import Iterable

import pyarrow as pa
import pyarrow.parquet as pq

from ..domain.errors import StorageError
from ..domain.models import EnrichedEvent
from ..domain.value_types import Address, TxHash
from ..ports.storage import EventStore

logger = logging.getLogger(__name__)

# uint256 columns are kept as decimal strings
EVENTS_SCHEMA = pa.schema([
    pa.field("tx_hash",             pa.string()),
    pa.field("log_index",           pa.int64()),
    pa.field("block_number",        pa.uint64()),
    pa.field("block_timestamp",     pa.int64()),
    pa.field("event_date",          pa.date32()),
    pa.field("from_address",        pa.string()),
    pa.field("to_address",          pa.string()),
    pa.field("value",               pa.large_string()),
    pa.field("gas_used",            pa.uint64()),
    pa.field("effective_gas_price", pa.large_string()),
    pa.field("gas_cost",            pa.large_string()),
])

Key = tuple[str, int]


def _events_to_table(evs: list[EnrichedEvent]) -> pa.Table:
    cols = {
        "tx_hash":             [e.tx_hash for e in evs],
        "log_index":           [e.log_index for e in evs],
        "block_number":        [e.block_number for e in evs],
        "block_timestamp":     [e.block_timestamp for e in evs],
        "event_date":          [e.event_date for e in evs],
        "from_address":        [e.from_address.lower() for e in evs],
        "to_address":          [e.to_address.lower() for e in evs],
        "value":               [str(e.value) for e in evs],
        "gas_used":            [e.gas_used for e in evs],
        "effective_gas_price": [str(e.effective_gas_price) for e in evs],
        "gas_cost":            [str(e.gas_cost) for e in evs],
    }
    return pa.Table.from_pydict(cols, schema=EVENTS_SCHEMA).sort_by([
        ("block_number", "ascending"),
        ("log_index", "ascending"),
    ])


def _row_to_event(r: dict) -> EnrichedEvent:
    return EnrichedEvent(
        tx_hash=TxHash(r["tx_hash"]),
        log_index=int(r["log_index"]),
        block_number=int(r["block_number"]),
        block_timestamp=int(r["block_timestamp"]),
        from_address=Address(r["from_address"]),
        to_address=Address(r["to_address"]),
        value=int(r["value"]),
        gas_used=int(r["gas_used"]),
        effective_gas_price=int(r["effective_gas_price"]),
        gas_cost=int(r["gas_cost"]),
    )


class ParquetEventStore(EventStore):
    """Append-only parquet parts merged on read by (tx_hash, log_index).

    Every ``upsert`` lands as a new ``part_NNNNNN.parquet``; on load, parts are
    replayed in index order so a later write of the same key replaces the
    earlier one. ``compact`` folds the merged state back into a single part.
    """

    def __init__(self, root_dir: str, codec: str = "snappy") -> None:
        self.root = root_dir
        self.parts_dir = os.path.join(root_dir, "events")
        self.codec = codec
        os.makedirs(self.parts_dir, exist_ok=True)
        self._rows: dict[Key, EnrichedEvent] | None = None
        self._lock = asyncio.Lock()

    # ── files ──
    def _parts(self) -> list[str]:
        return sorted(glob.glob(os.path.join(self.parts_dir, "part_*.parquet")))

    def _next_part_index(self) -> int:
        existing = self._parts()
        if not existing:
            return 1
        return int(os.path.basename(existing[-1]).split("_")[1].split(".")[0]) + 1

    def _write_part(self, evs: list[EnrichedEvent]) -> str:
        path = os.path.join(self.parts_dir, f"part_{self._next_part_index():06d}.parquet")
        tmp = path + ".tmp"
        pq.write_table(_events_to_table(evs), tmp, compression=self.codec)
        os.replace(tmp, path)
        return path

    def _load(self) -> dict[Key, EnrichedEvent]:
        rows: dict[Key, EnrichedEvent] = {}
        for path in self._parts():
            for r in pq.read_table(path, schema=EVENTS_SCHEMA).to_pylist():
                ev = _row_to_event(r)
                rows[ev.key] = ev
        return rows

    async def _state(self) -> dict[Key, EnrichedEvent]:
        if self._rows is None:
            try:
                self._rows = await asyncio.to_thread(self._load)
            except (OSError, pa.ArrowException) as e:
                raise StorageError(f"failed to load event parts from {self.parts_dir}: {e}") from e
            logger.debug("loaded %d events from %s", len(self._rows), self.parts_dir)
        return self._rows

    # ── EventStore ──
    async def upsert(self, events: Iterable[EnrichedEvent]) -> int:
        evs = list(events)
        if not evs:
            return 0
        async with self._lock:
            rows = await self._state()
            try:
                path = await asyncio.to_thread(self._write_part, evs)
            except (OSError, pa.ArrowException) as e:
                raise StorageError(f"failed to write {len(evs)} events: {e}") from e
            for ev in evs:
                rows[ev.key] = ev
        logger.info("upserted %d events → %s", len(evs), os.path.basename(path))
        return len(evs)

    async def count(self) -> int:
        return len(await self._state())

    async def last_block(self) -> int | None:
        rows = await self._state()
        return max((e.block_number for e in rows.values()), default=None)

    async def block_range(self) -> tuple[int, int] | None:
        rows = await self._state()
        if not rows:
            return None
        blocks = [e.block_number for e in rows.values()]
        return min(blocks), max(blocks)

    async def date_range(self) -> tuple[date, date] | None:
        rows = await self._state()
        if not rows:
            return None
        days = [e.event_date for e in rows.values()]
        return min(days), max(days)

    async def events(self) -> list[EnrichedEvent]:
        rows = await self._state()
        return sorted(rows.values(), key=lambda e: (e.block_number, e.log_index))

    async def compact(self) -> int:
        """Rewrite all parts as one; returns the number of parts removed."""
        async with self._lock:
            rows = await self._state()
            old = self._parts()
            if len(old) <= 1:
                return 0
            evs = sorted(rows.values(), key=lambda e: (e.block_number, e.log_index))
            try:
                await asyncio.to_thread(self._write_part, evs)
                for path in old:
                    os.remove(path)
            except (OSError, pa.ArrowException) as e:
                raise StorageError(f"compaction failed: {e}") from e
        logger.info("compacted %d parts into one (%d events)", len(old), len(evs))
        return len(old)
