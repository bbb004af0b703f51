from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from ..adapters.local_task import LocalTask
from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_store import ParquetEventStore
from ..adapters.rpc_httpx import HttpxRPC
from ..core.config import Settings
from ..domain.models import CollectionProgress
from ..ports.rpc import RPCClient
from ..ports.storage import EventStore
from .collector import RangeScanner, ScanPolicy
from .planning import lookback_blocks
from .report import build_report, write_report
from .retry import RetryPolicy, RetryStats

logger = logging.getLogger(__name__)


def _now_ts_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def retry_policy(s: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=s.max_retries,
        initial_delay_s=s.initial_retry_delay_ms / 1000,
        max_delay_s=s.max_retry_delay_ms / 1000,
    )


def scan_policy(s: Settings) -> ScanPolicy:
    return ScanPolicy(
        batch_size=s.batch_size,
        batch_delay_s=s.batch_delay_ms / 1000,
        lookback_blocks=lookback_blocks(s.lookback_days, s.block_time_s),
        segment_block_limit=s.segment_block_limit,
        adaptive_shrink=s.adaptive_shrink,
    )


def open_store(s: Settings) -> ParquetEventStore:
    return ParquetEventStore(str(s.store_dir))


def open_run(s: Settings, on_progress: Callable[[CollectionProgress], None] | None = None) -> LocalTask:
    """Per-run manifest (timestamped) + the local task that owns it."""
    run_basename = f"run_{_now_ts_str()}_{s.target_address}.jsonl"
    manifest = JSONLManifest(os.path.join(str(s.manifests_dir), run_basename))
    return LocalTask(str(s.checkpoint_path), manifest=manifest, on_progress=on_progress)


async def collect_events(
    s: Settings,
    task: LocalTask,
    *,
    rpc: RPCClient | None = None,
    store: EventStore | None = None,
    stats: RetryStats | None = None,
) -> CollectionProgress:
    own_rpc = rpc is None
    rpc = rpc if rpc is not None else HttpxRPC(s.rpc_url, timeout_s=s.rpc_timeout_s)
    store = store if store is not None else open_store(s)
    scanner = RangeScanner(
        rpc, store, task,
        target_address=s.target_address,
        contract_address=s.contract_address,
        target_events=s.target_events,
        policy=scan_policy(s),
        retry=retry_policy(s),
        manifest=task.manifest,
        stats=stats,
    )
    try:
        return await scanner.run()
    finally:
        logger.info("retry stats: %s", scanner.stats.as_dict())
        if own_rpc:
            await rpc.aclose()


async def export_report(s: Settings, path: str, *, store: EventStore | None = None) -> dict[str, Any]:
    store = store if store is not None else open_store(s)
    report = await build_report(store, address=s.target_address, network=s.network, token=s.token_symbol)
    write_report(report, path)
    return report


@dataclass(slots=True, frozen=True)
class CheckResult:
    component: str
    status: Literal["ok", "error"]
    message: str
    details: dict[str, Any]


async def validate(s: Settings, *, rpc: RPCClient | None = None, store: EventStore | None = None) -> list[CheckResult]:
    results = [CheckResult("Configuration", "ok", "All required variables present", {
        "target_address": s.target_address,
        "token_contract": s.contract_address,
        "min_events": s.target_events,
        "batch_size": s.batch_size,
    })]

    own_rpc = rpc is None
    rpc = rpc if rpc is not None else HttpxRPC(s.rpc_url, timeout_s=s.rpc_timeout_s)
    try:
        head = await rpc.latest_block()
        results.append(CheckResult("Ethereum RPC", "ok", "Connected successfully", {"current_block": head}))
    except Exception as e:
        results.append(CheckResult("Ethereum RPC", "error", f"{type(e).__name__}: {e}", {}))
    finally:
        if own_rpc:
            await rpc.aclose()

    try:
        store = store if store is not None else open_store(s)
        n = await store.count()
        results.append(CheckResult("Event store", "ok", "Readable", {"path": str(s.store_dir), "events": n}))
    except Exception as e:
        results.append(CheckResult("Event store", "error", f"{type(e).__name__}: {e}", {}))
    return results


async def store_summary(store: EventStore) -> dict[str, Any]:
    blocks = await store.block_range()
    dates = await store.date_range()
    return {
        "events": await store.count(),
        "blocks": list(blocks) if blocks else None,
        "dates": [d.isoformat() for d in dates] if dates else None,
    }
