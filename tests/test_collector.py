import dataclasses

import pytest

from conftest import CONTRACT, OTHER, TARGET, FakeRPC, SleepRecorder, make_log
from gaslens.adapters.local_task import LocalTask
from gaslens.adapters.manifest_jsonl import JSONLManifest
from gaslens.application.collector import RangeScanner, ScanPolicy
from gaslens.application.retry import RetryPolicy
from gaslens.domain.errors import DecodeError, RangeTooLargeError, ServerError, StorageError

RETRY = RetryPolicy(max_retries=2, initial_delay_s=0.01, max_delay_s=0.05)
POLICY = ScanPolicy(batch_size=100, batch_delay_s=0.5, lookback_blocks=500)
BLOCKS = (520, 540, 610, 700, 905)


def chain(head: int = 1_000, **kw) -> FakeRPC:
    logs = [make_log(b, 0, TARGET if i % 2 == 0 else OTHER, OTHER if i % 2 == 0 else TARGET, 1_000 + i)
            for i, b in enumerate(BLOCKS)]
    return FakeRPC(head=head, logs=logs, **kw)


def scanner(rpc, store, task, *, target=100, policy=POLICY, sleep=None, manifest=None):
    return RangeScanner(rpc, store, task, target_address=TARGET, contract_address=CONTRACT,
                        target_events=target, policy=policy, retry=RETRY, manifest=manifest,
                        sleep=sleep or SleepRecorder())


def scanned_ranges(rpc: FakeRPC) -> list[tuple[int, int]]:
    return sorted({(fb, tb) for _, fb, tb in rpc.log_queries})


class FlakyStore:
    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.upserts = 0

    async def upsert(self, events):
        self.upserts += 1
        if self.failures:
            self.failures -= 1
            raise StorageError("disk full")
        return await self.inner.upsert(events)

    def __getattr__(self, name):
        return getattr(self.inner, name)


async def test_stops_once_target_is_reached(store, task, sleeper):
    rpc = chain()
    progress = await scanner(rpc, store, task, target=3, sleep=sleeper).run()

    assert progress.state == "completed" and progress.is_complete
    assert progress.events_collected == 3
    assert progress.current_block == 700
    assert progress.blocks_processed == 200
    assert scanned_ranges(rpc) == [(500, 599), (600, 699)]
    assert await store.count() == 3
    # one pause after each batch
    assert sleeper.calls == [0.5, 0.5]


async def test_runs_to_chain_head_when_target_not_met(store, task):
    rpc = chain()
    progress = await scanner(rpc, store, task, target=100).run()

    assert progress.state == "completed" and progress.is_complete
    assert progress.events_collected == 5
    assert progress.current_block == 1_000
    assert progress.blocks_processed == 500
    assert scanned_ranges(rpc)[-1] == (900, 999)
    assert task.progress.state == "completed"


async def test_last_batch_is_clamped_to_head(store, task):
    rpc = chain(head=950)
    await scanner(rpc, store, task).run(start_from=800)
    assert scanned_ranges(rpc) == [(800, 899), (900, 950)]


async def test_resume_continues_after_last_persisted_block(store, tmp_path):
    rpc = chain()
    first = await scanner(rpc, store, LocalTask(str(tmp_path / "a.json")), target=2).run()
    assert first.events_collected == 2 and first.current_block == 600

    rpc.log_queries.clear()
    second = await scanner(rpc, store, LocalTask(str(tmp_path / "b.json")), target=4).run()
    assert scanned_ranges(rpc) == [(541, 640), (641, 740)]
    assert second.events_collected == 4
    assert await store.count() == 4
    assert [e.block_number for e in await store.events()] == [520, 540, 610, 700]


async def test_rerun_does_not_duplicate_events(store, task):
    rpc = chain()
    await scanner(rpc, store, task, target=100).run()
    assert await store.count() == 5

    again = await scanner(rpc, store, task, target=100).run(start_from=500)
    assert again.events_collected == 5
    assert await store.count() == 5


async def test_satisfied_target_scans_nothing(store, task):
    rpc = chain()
    await scanner(rpc, store, task, target=3).run()
    rpc.log_queries.clear()
    progress = await scanner(rpc, store, task, target=3).run()
    assert rpc.log_queries == []
    assert progress.state == "completed" and progress.events_collected == 3


async def test_stop_request_ends_after_current_batch(store, tmp_path):
    task = LocalTask(str(tmp_path / "checkpoint.json"))

    async def stop_after_first(seconds: float) -> None:
        task.request_stop()

    rpc = chain()
    progress = await scanner(rpc, store, task, sleep=stop_after_first).run()
    assert progress.state == "stopped"
    assert not progress.is_complete
    assert progress.current_block == 600
    assert await store.count() == 2


async def test_segments_checkpoint_and_carry_cursor(store, task):
    rpc = chain()
    policy = ScanPolicy(batch_size=100, batch_delay_s=0.0, lookback_blocks=500, segment_block_limit=150)
    progress = await scanner(rpc, store, task, policy=policy).run()

    assert progress.segments == 3
    assert progress.blocks_processed == 500
    assert progress.current_block == 1_000
    assert progress.events_collected == 5
    # head is resolved again for every segment
    assert rpc.calls["eth_blockNumber"] == 3
    saved = task.load_checkpoint()
    assert saved["current_block"] == 900 and saved["segments"] == 2


async def test_range_too_large_is_fatal_by_default(store, tmp_path):
    manifest = JSONLManifest(str(tmp_path / "run.jsonl"))
    task = LocalTask(str(tmp_path / "checkpoint.json"))
    rpc = chain(range_limit=50)
    with pytest.raises(RangeTooLargeError):
        await scanner(rpc, store, task, manifest=manifest).run()

    failed = [r for r in manifest.records() if r.status == "failed"]
    assert [(r.from_block, r.to_block) for r in failed] == [(500, 599)]
    assert "RangeTooLargeError" in failed[0].error
    assert task.progress.current_block == 500


async def test_adaptive_shrink_halves_the_batch(store, task):
    rpc = chain(range_limit=30)
    policy = ScanPolicy(batch_size=100, batch_delay_s=0.0, lookback_blocks=500, adaptive_shrink=True)
    s = scanner(rpc, store, task, policy=policy)
    progress = await s.run()

    assert s.batch_size == 25
    assert progress.state == "completed"
    assert progress.events_collected == 5
    assert progress.current_block == 1_000


async def test_adaptive_shrink_gives_up_at_min_batch(store, task):
    rpc = chain(range_limit=5)
    policy = ScanPolicy(batch_size=40, batch_delay_s=0.0, lookback_blocks=500,
                        adaptive_shrink=True, min_batch_size=10)
    with pytest.raises(RangeTooLargeError):
        await scanner(rpc, store, task, policy=policy).run()


async def test_storage_errors_rerun_the_batch(store, task, sleeper):
    flaky = FlakyStore(store, failures=2)
    progress = await scanner(chain(), flaky, task, target=2, sleep=sleeper).run()
    assert flaky.upserts == 3
    assert progress.events_collected == 2
    assert await store.count() == 2


async def test_persistent_storage_errors_propagate(store, task):
    flaky = FlakyStore(store, failures=100)
    with pytest.raises(StorageError):
        await scanner(chain(), flaky, task).run()
    assert flaky.upserts == POLICY.storage_retries + 1
    assert task.progress.current_block == 500


async def test_decode_errors_fail_without_advancing(store, task):
    rpc = chain()
    rpc.logs.append(dataclasses.replace(make_log(515, 0, TARGET, OTHER, 1), data_hex="0x"))
    with pytest.raises(DecodeError):
        await scanner(rpc, store, task).run()
    assert await store.count() == 0
    assert task.progress.current_block == 500


async def test_exhausted_rpc_retries_fail_the_run(store, task):
    rpc = chain()
    rpc.failures["eth_getLogs"].extend(ServerError("HTTP 502", http_status=502) for _ in range(10))
    with pytest.raises(ServerError):
        await scanner(rpc, store, task).run()
    assert task.progress.current_block == 500


async def test_manifest_records_every_batch(store, tmp_path):
    manifest = JSONLManifest(str(tmp_path / "run.jsonl"))
    await scanner(chain(), store, LocalTask(str(tmp_path / "c.json")), target=3, manifest=manifest).run()
    done = [r for r in manifest.records() if r.status == "done"]
    assert [(r.from_block, r.to_block, r.events) for r in done] == [(500, 599, 2), (600, 699, 1)]
    assert done[0].details == {"batch_size": 100}


def test_scan_policy_validation():
    with pytest.raises(ValueError):
        ScanPolicy(batch_size=0)
    with pytest.raises(ValueError):
        ScanPolicy(segment_block_limit=0)
