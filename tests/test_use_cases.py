import json
import os

from conftest import CONTRACT, OTHER, TARGET, FakeRPC, make_event, make_log
from gaslens.application.retry import RetryStats
from gaslens.application.use_cases import (
    collect_events, export_report, open_run, open_store, store_summary, validate,
)
from gaslens.core.config import load_settings
from gaslens.domain.errors import ServerError


def settings(tmp_path, **kw):
    return load_settings({
        "ETH_RPC_URL": "https://rpc.example",
        "TARGET_ADDRESS": TARGET,
        "TOKEN_CONTRACT": CONTRACT,
        "DATA_DIR": str(tmp_path / "data"),
        "BLOCK_BATCH_SIZE": "100",
        "BATCH_DELAY_MS": "0",
        "MIN_EVENTS": "2",
        "LOOKBACK_DAYS": "1",
        "BLOCK_TIME_S": "432",  # 200 blocks per day
        **kw,
    })


async def test_collect_then_report(tmp_path):
    s = settings(tmp_path)
    rpc = FakeRPC(head=1_000, logs=[make_log(850, 0, TARGET, OTHER, 1), make_log(900, 0, OTHER, TARGET, 2)])
    task = open_run(s)
    progress = await collect_events(s, task, rpc=rpc, stats=RetryStats())

    assert progress.state == "completed" and progress.events_collected == 2
    assert not rpc.closed
    assert os.path.dirname(task.manifest.path) == str(s.manifests_dir)
    assert [r.status for r in task.manifest.records()] == ["done", "done"]

    out = tmp_path / "out" / "report.json"
    report = await export_report(s, str(out))
    assert report["summary"]["events_collected"] == 2
    with open(out) as f:
        assert json.load(f)["address"] == TARGET


async def test_validate_reports_each_component(tmp_path):
    s = settings(tmp_path)
    results = await validate(s, rpc=FakeRPC(head=123))
    assert [(r.component, r.status) for r in results] == [
        ("Configuration", "ok"), ("Ethereum RPC", "ok"), ("Event store", "ok"),
    ]
    assert results[1].details == {"current_block": 123}

    down = FakeRPC(head=1)
    down.failures["eth_blockNumber"].append(ServerError("HTTP 502", http_status=502))
    results = await validate(s, rpc=down)
    assert results[1].status == "error" and "ServerError" in results[1].message


async def test_store_summary(tmp_path):
    s = settings(tmp_path)
    store = open_store(s)
    assert await store_summary(store) == {"events": 0, "blocks": None, "dates": None}
    await store.upsert([make_event(5, ts=1_704_067_200), make_event(9, ts=1_704_153_600)])
    assert await store_summary(store) == {"events": 2, "blocks": [5, 9], "dates": ["2024-01-01", "2024-01-02"]}
