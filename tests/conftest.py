from __future__ import annotations

from collections import Counter, defaultdict
from typing import Sequence

import pytest

from gaslens.adapters.local_task import LocalTask
from gaslens.adapters.parquet_store import ParquetEventStore
from gaslens.domain.decoding import TRANSFER_T0, address_topic
from gaslens.domain.errors import RangeTooLargeError
from gaslens.domain.models import EnrichedEvent, RawLog, Receipt
from gaslens.domain.value_types import Address, TxHash

TARGET   = Address("0xef4fb24ad0916217251f553c0596f8edc630eb66")
CONTRACT = Address("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
OTHER    = Address("0x1234567890123456789012345678901234567890")

GENESIS_TS = 1_700_000_000
BLOCK_TIME = 12
GWEI = 10**9


def tx_hash(n: int) -> TxHash:
    return TxHash("0x" + format(n, "064x"))


def make_log(block: int, log_index: int, frm: str, to: str, value: int, *,
             tx: TxHash | None = None, contract: str = CONTRACT, ts: int | None = None) -> RawLog:
    return RawLog(
        address=Address(contract),
        topics=(TRANSFER_T0, address_topic(frm), address_topic(to)),
        data_hex="0x" + format(value, "064x"),
        block_number=block,
        tx_hash=tx or tx_hash(block * 1_000 + log_index),
        log_index=log_index,
        block_timestamp=ts,
    )


def make_event(block: int, log_index: int = 0, *, ts: int | None = None, gas_used: int = 21_000,
               price: int = 25 * GWEI, value: int = 1_000_000, tx: TxHash | None = None) -> EnrichedEvent:
    return EnrichedEvent(
        tx_hash=tx or tx_hash(block * 1_000 + log_index),
        log_index=log_index,
        block_number=block,
        block_timestamp=GENESIS_TS + block * BLOCK_TIME if ts is None else ts,
        from_address=TARGET,
        to_address=OTHER,
        value=value,
        gas_used=gas_used,
        effective_gas_price=price,
        gas_cost=gas_used * price,
    )


class FakeRPC:
    """In-memory chain. ``failures[method]`` is a queue of exceptions raised before serving."""

    def __init__(self, head: int, logs: Sequence[RawLog] = (), *, range_limit: int | None = None) -> None:
        self.head = head
        self.logs = list(logs)
        self.range_limit = range_limit
        self.receipts: dict[str, Receipt] = {}
        self.calls: Counter = Counter()
        self.log_queries: list[tuple[list[str | None], int, int]] = []
        self.receipt_queries: list[str] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.closed = False

    def _maybe_fail(self, method: str) -> None:
        self.calls[method] += 1
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def latest_block(self) -> int:
        self._maybe_fail("eth_blockNumber")
        return self.head

    async def get_logs(self, address: Address, topics: Sequence[str | None], from_block: int, to_block: int) -> list[RawLog]:
        self._maybe_fail("eth_getLogs")
        self.log_queries.append((list(topics), from_block, to_block))
        if self.range_limit is not None and to_block - from_block + 1 > self.range_limit:
            raise RangeTooLargeError("query exceeds max block range", code=-32005)
        return [
            l for l in self.logs
            if l.address == address.lower()
            and from_block <= l.block_number <= to_block
            and all(t is None or (i < len(l.topics) and l.topics[i] == t) for i, t in enumerate(topics))
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        self._maybe_fail("eth_getBlockByNumber")
        return GENESIS_TS + block_number * BLOCK_TIME

    async def get_receipt(self, h: TxHash) -> Receipt:
        self._maybe_fail("eth_getTransactionReceipt")
        self.receipt_queries.append(h)
        return self.receipts.get(h) or Receipt(tx_hash=h, gas_used=50_000, effective_gas_price=30 * GWEI)

    async def aclose(self) -> None:
        self.closed = True


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store(tmp_path) -> ParquetEventStore:
    return ParquetEventStore(str(tmp_path / "store"))


@pytest.fixture
def task(tmp_path) -> LocalTask:
    return LocalTask(str(tmp_path / "checkpoint.json"))
