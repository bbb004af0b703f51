import dataclasses
import glob
import os
from datetime import date

import pyarrow.parquet as pq
import pytest

from conftest import GWEI, make_event
from gaslens.adapters.parquet_store import EVENTS_SCHEMA, ParquetEventStore
from gaslens.domain.errors import StorageError


async def test_empty_store(store):
    assert await store.count() == 0
    assert await store.last_block() is None
    assert await store.block_range() is None
    assert await store.date_range() is None
    assert await store.events() == []
    assert await store.upsert([]) == 0


async def test_upsert_is_idempotent_per_key(store):
    evs = [make_event(100), make_event(100, 1), make_event(105)]
    assert await store.upsert(evs) == 3
    assert await store.upsert(evs) == 3
    assert await store.count() == 3


async def test_latest_write_wins(store):
    first = make_event(100, gas_used=21_000, price=10 * GWEI)
    second = make_event(100, gas_used=60_000, price=12 * GWEI)
    await store.upsert([first])
    await store.upsert([second])

    [ev] = await store.events()
    assert ev.gas_used == 60_000
    assert ev.gas_cost == 60_000 * 12 * GWEI


async def test_ranges_and_ordering(store):
    await store.upsert([make_event(300, ts=1_704_067_200), make_event(100, 2, ts=1_703_980_800),
                        make_event(100, 1, ts=1_703_980_800)])
    assert await store.last_block() == 300
    assert await store.block_range() == (100, 300)
    assert await store.date_range() == (date(2023, 12, 31), date(2024, 1, 1))
    assert [(e.block_number, e.log_index) for e in await store.events()] == [(100, 1), (100, 2), (300, 0)]


async def test_persists_across_instances(tmp_path):
    root = str(tmp_path / "s")
    huge = make_event(100, value=2**256 - 1, price=10**30)
    await ParquetEventStore(root).upsert([huge, make_event(101)])

    reopened = ParquetEventStore(root)
    assert await reopened.count() == 2
    [a, b] = await reopened.events()
    assert a == huge
    assert b.block_number == 101


async def test_parts_use_the_event_schema(store):
    await store.upsert([make_event(1)])
    [part] = glob.glob(os.path.join(store.parts_dir, "part_*.parquet"))
    assert os.path.basename(part) == "part_000001.parquet"
    assert pq.read_schema(part).names == EVENTS_SCHEMA.names


async def test_compact_merges_parts(tmp_path):
    root = str(tmp_path / "s")
    store = ParquetEventStore(root)
    await store.upsert([make_event(1)])
    await store.upsert([make_event(2)])
    await store.upsert([make_event(1, gas_used=99_000)])
    assert await store.compact() == 3

    parts = glob.glob(os.path.join(store.parts_dir, "part_*.parquet"))
    assert [os.path.basename(p) for p in parts] == ["part_000004.parquet"]
    reopened = ParquetEventStore(root)
    assert await reopened.count() == 2
    assert (await reopened.events())[0].gas_used == 99_000
    assert await reopened.compact() == 0


async def test_corrupt_part_raises_storage_error(tmp_path):
    store = ParquetEventStore(str(tmp_path / "s"))
    with open(os.path.join(store.parts_dir, "part_000001.parquet"), "wb") as f:
        f.write(b"not parquet")
    with pytest.raises(StorageError):
        await store.count()


def test_event_invariants():
    ev = make_event(1)
    with pytest.raises(ValueError):
        dataclasses.replace(ev, gas_cost=ev.gas_cost + 1)
    with pytest.raises(ValueError):
        dataclasses.replace(ev, value=-1)
