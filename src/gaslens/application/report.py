from __future__ import annotations

import json
import logging
import os
from typing import Any

from ..domain.analysis import cumulative_gas_cost, daily_gas_cost, moving_average_gas_price
from ..domain.errors import NoDataError
from ..ports.storage import EventStore

logger = logging.getLogger(__name__)


async def build_report(
    store: EventStore,
    *,
    address: str,
    network: str,
    token: str,
    window_days: int = 7,
) -> dict[str, Any]:
    """Assemble the analysis report.

    Wei amounts are decimal strings (they overflow a JSON double); ETH and
    Gwei figures are floats for display only.
    """
    events = await store.events()
    if not events:
        raise NoDataError("No data available for analysis")
    blocks = await store.block_range()
    dates = await store.date_range()
    if blocks is None or dates is None:
        raise NoDataError("Store returned events but no block/date range")

    report = {
        "address": address.lower(),
        "network": network,
        "token": token,
        "summary": {
            "events_collected": len(events),
            "blocks_scanned": [blocks[0], blocks[1]],
            "period_utc": [dates[0].isoformat(), dates[1].isoformat()],
        },
        "daily_gas_cost": [
            {"date": d.date.isoformat(), "gas_cost_wei": str(d.gas_cost_wei), "gas_cost_eth": d.gas_cost_eth}
            for d in daily_gas_cost(events)
        ],
        "ma7_effective_gas_price": [
            {"date": m.date.isoformat(), "ma7_wei": str(m.ma_wei), "ma7_gwei": m.ma_gwei}
            for m in moving_average_gas_price(events, window_days)
        ],
        "cumulative_gas_cost_eth": [
            {"date": c.date.isoformat(), "cum_eth": c.cum_eth}
            for c in cumulative_gas_cost(events)
        ],
    }
    logger.info("report: %d events, blocks %d-%d, %s to %s",
                len(events), blocks[0], blocks[1], dates[0], dates[1])
    return report


def write_report(report: dict[str, Any], path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
        f.write("\n")
    os.replace(tmp, path)
    logger.info("report written to %s", path)
    return path
