from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence, TypeVar

from ..domain.decoding import TRANSFER_T0, address_topic, decode_transfer
from ..domain.models import EnrichedEvent, RawLog, Receipt, TransferEvent
from ..domain.value_types import Address, TxHash
from ..ports.rpc import RPCClient
from .retry import RetryPolicy, RetryStats, Sleep, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")
Heartbeat = Callable[..., None]


@dataclass(slots=True, frozen=True)
class Pacing:
    """Sub-batch sizes and pauses used inside one block batch."""
    block_wave: int = 5
    block_wave_delay_s: float = 0.3
    receipt_batch: int = 50
    receipt_batch_delay_s: float = 0.1

    def __post_init__(self) -> None:
        if self.block_wave < 1 or self.receipt_batch < 1:
            raise ValueError("sub-batch sizes must be >= 1")


def _chunks(items: Sequence[T], n: int) -> list[Sequence[T]]:
    return [items[i:i + n] for i in range(0, len(items), n)]


def merge_logs(*results: Iterable[RawLog]) -> list[RawLog]:
    """Union of log lists, one entry per (tx_hash, log_index), ordered by position in chain."""
    seen: dict[tuple[str, int], RawLog] = {}
    for logs in results:
        for log in logs:
            seen[log.key] = log
    return sorted(seen.values(), key=lambda l: (l.block_number, l.log_index))


def unique_block_numbers(logs: Iterable[RawLog]) -> list[int]:
    return sorted({l.block_number for l in logs})


async def _paced_gather(
    items: Sequence[T],
    size: int,
    delay_s: float,
    call: Callable[[T], Any],
    sleep: Sleep,
    heartbeat: Heartbeat | None,
    phase: str,
) -> list[Any]:
    out: list[Any] = []
    waves = _chunks(items, size)
    for i, wave in enumerate(waves):
        out.extend(await asyncio.gather(*(call(x) for x in wave)))
        if heartbeat is not None:
            heartbeat(phase=phase, done=len(out), total=len(items))
        if i + 1 < len(waves):
            await sleep(delay_s)
    return out


async def fetch_transfer_logs(
    rpc: RPCClient,
    from_block: int,
    to_block: int,
    target_address: Address,
    contract_address: Address,
    *,
    retry: RetryPolicy,
    stats: RetryStats | None = None,
    sleep: Sleep = asyncio.sleep,
) -> list[RawLog]:
    # eth_getLogs cannot OR two indexed slots, so query each side separately
    t = address_topic(target_address)
    sides = {"from": [TRANSFER_T0, t, None], "to": [TRANSFER_T0, None, t]}

    async def query(side: str) -> list[RawLog]:
        return await with_retry(
            lambda: rpc.get_logs(contract_address, sides[side], from_block, to_block),
            retry, stats=stats, sleep=sleep, label=f"eth_getLogs[{side}] {from_block}-{to_block}",
        )

    sent, received = await asyncio.gather(query("from"), query("to"))
    return merge_logs(sent, received)


async def resolve_timestamps(
    rpc: RPCClient,
    logs: Sequence[RawLog],
    *,
    retry: RetryPolicy,
    pacing: Pacing = Pacing(),
    stats: RetryStats | None = None,
    sleep: Sleep = asyncio.sleep,
    heartbeat: Heartbeat | None = None,
) -> dict[int, int]:
    """block_number -> unix timestamp for every block referenced by ``logs``."""
    ts: dict[int, int] = {l.block_number: l.block_timestamp for l in logs if l.block_timestamp is not None}
    missing = [b for b in unique_block_numbers(logs) if b not in ts]

    async def one(b: int) -> tuple[int, int]:
        v = await with_retry(lambda: rpc.get_block_timestamp(b), retry,
                             stats=stats, sleep=sleep, label=f"eth_getBlockByNumber {b}")
        return b, v

    for b, v in await _paced_gather(missing, pacing.block_wave, pacing.block_wave_delay_s,
                                    one, sleep, heartbeat, "blocks"):
        ts[b] = v
    return ts


async def enrich_events(
    rpc: RPCClient,
    events: Sequence[TransferEvent],
    *,
    retry: RetryPolicy,
    pacing: Pacing = Pacing(),
    stats: RetryStats | None = None,
    sleep: Sleep = asyncio.sleep,
    heartbeat: Heartbeat | None = None,
) -> list[EnrichedEvent]:
    tx_hashes = list(dict.fromkeys(ev.tx_hash for ev in events))

    async def one(h: TxHash) -> Receipt:
        return await with_retry(lambda: rpc.get_receipt(h), retry,
                                stats=stats, sleep=sleep, label=f"eth_getTransactionReceipt {h}")

    receipts = dict(zip(tx_hashes, await _paced_gather(
        tx_hashes, pacing.receipt_batch, pacing.receipt_batch_delay_s, one, sleep, heartbeat, "receipts")))
    return [EnrichedEvent.from_transfer(ev, receipts[ev.tx_hash]) for ev in events]


async def fetch_and_enrich(
    rpc: RPCClient,
    from_block: int,
    to_block: int,
    target_address: Address,
    contract_address: Address,
    *,
    retry: RetryPolicy,
    pacing: Pacing = Pacing(),
    stats: RetryStats | None = None,
    sleep: Sleep = asyncio.sleep,
    heartbeat: Heartbeat | None = None,
) -> list[EnrichedEvent]:
    """Logs → timestamps → decoded transfers → gas-enriched events for one inclusive range.

    An empty range yields ``[]``. A log that does not decode as a Transfer
    fails the whole batch with ``DecodeError``.
    """
    if from_block > to_block:
        raise ValueError(f"from_block ({from_block}) must be <= to_block ({to_block})")

    logs = await fetch_transfer_logs(rpc, from_block, to_block, target_address, contract_address,
                                     retry=retry, stats=stats, sleep=sleep)
    if not logs:
        logger.debug("no transfer logs in [%d, %d]", from_block, to_block)
        return []
    logger.info("found %d transfer logs in [%d, %d]", len(logs), from_block, to_block)
    if heartbeat is not None:
        heartbeat(phase="logs", logs=len(logs))

    timestamps = await resolve_timestamps(rpc, logs, retry=retry, pacing=pacing,
                                          stats=stats, sleep=sleep, heartbeat=heartbeat)
    events = [decode_transfer(l, timestamps[l.block_number]) for l in logs]
    return await enrich_events(rpc, events, retry=retry, pacing=pacing,
                               stats=stats, sleep=sleep, heartbeat=heartbeat)
