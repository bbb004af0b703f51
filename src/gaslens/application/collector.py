from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ..domain.errors import RangeTooLargeError, StorageError
from ..domain.models import BlockRange, ChunkRec, CollectionProgress
from ..domain.value_types import Address
from ..ports.rpc import RPCClient
from ..ports.storage import EventStore, ManifestSink
from ..ports.task import ResumableTask
from .pipeline import Pacing, fetch_and_enrich
from .planning import next_batch, starting_block
from .retry import RetryPolicy, RetryStats, Sleep, with_retry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ScanPolicy:
    batch_size: int = 2_000
    batch_delay_s: float = 0.5
    lookback_blocks: int = 216_000        # 30 days @ 12s
    segment_block_limit: int = 500_000
    adaptive_shrink: bool = False
    min_batch_size: int = 10
    storage_retries: int = 3

    def __post_init__(self) -> None:
        if self.batch_size < 1 or self.min_batch_size < 1:
            raise ValueError("batch sizes must be >= 1")
        if self.segment_block_limit < 1:
            raise ValueError("segment_block_limit must be >= 1")


class RangeScanner:
    """Sequential, resumable block-range scanner.

    idle → resuming → scanning → (stopped | completed). One batch at a time;
    the cursor only moves forward after a batch's events are persisted, so a
    crash re-runs at most the batch in flight (the store upsert is idempotent).
    Every ``segment_block_limit`` blocks the scanner checkpoints through the
    task and restarts as a new segment from the carried cursor.
    """

    def __init__(
        self,
        rpc: RPCClient,
        store: EventStore,
        task: ResumableTask,
        *,
        target_address: Address,
        contract_address: Address,
        target_events: int,
        policy: ScanPolicy = ScanPolicy(),
        retry: RetryPolicy = RetryPolicy(),
        pacing: Pacing = Pacing(),
        manifest: ManifestSink | None = None,
        stats: RetryStats | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if target_events < 0:
            raise ValueError("target_events must be >= 0")
        self.rpc = rpc
        self.store = store
        self.task = task
        self.target_address = target_address
        self.contract_address = contract_address
        self.target_events = target_events
        self.policy = policy
        self.retry = retry
        self.pacing = pacing
        self.manifest = manifest
        self.stats = stats if stats is not None else RetryStats()
        self.sleep = sleep
        self.batch_size = policy.batch_size

    async def run(self, start_from: int | None = None) -> CollectionProgress:
        segments = 1
        carried_blocks = 0
        while True:
            progress = await self._resume(start_from)
            progress.segments = segments
            progress.blocks_processed = carried_blocks
            if not await self._scan(progress):
                return progress
            # continue as a new segment with the carried cursor
            start_from = progress.current_block
            carried_blocks = progress.blocks_processed
            segments += 1

    async def _resume(self, start_from: int | None) -> CollectionProgress:
        progress = CollectionProgress(target_events=self.target_events, state="resuming")
        self.task.report_progress(progress)

        head = await with_retry(self.rpc.latest_block, self.retry, stats=self.stats,
                                sleep=self.sleep, label="eth_blockNumber")
        if start_from is None:
            last = await self.store.last_block()
            start_from = starting_block(last, head, self.policy.lookback_blocks)
            if last is not None:
                logger.info("resuming from last persisted block %d", last)
            else:
                logger.info("no persisted events; starting %d blocks behind head", self.policy.lookback_blocks)

        progress.chain_head = head
        progress.current_block = start_from
        progress.events_collected = await self.store.count()
        progress.state = "scanning"
        self.task.report_progress(progress)
        logger.info("scanning [%d, %d] for up to %d events (%d already stored, batch=%d)",
                    start_from, head, self.target_events, progress.events_collected, self.batch_size)
        return progress

    async def _scan(self, progress: CollectionProgress) -> bool:
        """Run batches until terminal; True means a segment checkpoint was taken."""
        segment_blocks = 0
        storage_failures = 0
        while progress.should_continue() and not self.task.stop_requested():
            rng = next_batch(progress.current_block, self.batch_size, progress.chain_head)
            self.task.heartbeat(from_block=rng.start, to_block=rng.end, phase="start")
            try:
                found, stored = await self._run_batch(rng)
            except RangeTooLargeError as e:
                if not self._shrink(rng, e):
                    await self._record_failure(rng, e)
                    raise
                continue
            except StorageError as e:
                storage_failures += 1
                if storage_failures > self.policy.storage_retries:
                    await self._record_failure(rng, e)
                    raise
                logger.warning("storage write failed for %s (%d/%d), re-running batch: %s",
                               rng, storage_failures, self.policy.storage_retries, e)
                await self.sleep(self.policy.batch_delay_s)
                continue
            except Exception as e:
                await self._record_failure(rng, e)
                raise
            storage_failures = 0

            progress.advance(rng, stored)
            segment_blocks += rng.span()
            self.task.report_progress(progress)
            if self.manifest is not None:
                await self.manifest.append(ChunkRec(rng.start, rng.end, "done", 1, None, found, stored,
                                                    time.time(), {"batch_size": self.batch_size}))
            logger.info("%s → %d events, %d new (total %d/%d)", rng, found, stored,
                        progress.events_collected, progress.target_events)

            await self.sleep(self.policy.batch_delay_s)

            if (segment_blocks > self.policy.segment_block_limit and progress.should_continue()
                    and not self.task.stop_requested()):
                await self.task.checkpoint(progress)
                return True

        progress.finish(stopped=self.task.stop_requested())
        self.task.report_progress(progress)
        logger.info("collection %s at block %d: %d events, %d blocks processed",
                    progress.state, progress.current_block, progress.events_collected,
                    progress.blocks_processed)
        return False

    async def _run_batch(self, rng: BlockRange) -> tuple[int, int]:
        """Returns (events found, keys new to the store)."""
        events = await fetch_and_enrich(
            self.rpc, rng.start, rng.end, self.target_address, self.contract_address,
            retry=self.retry, pacing=self.pacing, stats=self.stats, sleep=self.sleep,
            heartbeat=self.task.heartbeat,
        )
        if not events:
            return 0, 0
        self.task.heartbeat(from_block=rng.start, to_block=rng.end, phase="storing", events=len(events))
        before = await self.store.count()
        await self.store.upsert(events)
        return len(events), await self.store.count() - before

    def _shrink(self, rng: BlockRange, err: RangeTooLargeError) -> bool:
        if not self.policy.adaptive_shrink or rng.span() <= self.policy.min_batch_size:
            return False
        self.batch_size = max(self.policy.min_batch_size, rng.span() // 2)
        logger.warning("provider rejected %s (%s); shrinking batch size to %d", rng, err, self.batch_size)
        return True

    async def _record_failure(self, rng: BlockRange, err: BaseException) -> None:
        logger.error("batch %s failed: %s: %s", rng, type(err).__name__, err)
        if self.manifest is not None:
            await self.manifest.append(ChunkRec(rng.start, rng.end, "failed", 1,
                                                f"{type(err).__name__}: {err}", 0, 0, time.time()))
