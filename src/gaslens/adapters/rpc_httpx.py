from __future__ import annotations
import itertools, logging, time
from typing import Any, Sequence

import httpx

from ..domain.errors import (
    DecodeError, NotFoundError, RangeTooLargeError, RateLimitError, RPCError, ServerError,
)
from ..domain.models import RawLog, Receipt
from ..domain.value_types import Address, TxHash
from ..ports.rpc import RPCClient

logger = logging.getLogger(__name__)

_LIMIT_CODE = -32005  # both throttling and result-size limits
_RANGE_HINTS = ("more than 10000 results", "query returned more than", "block range",
                "range is too large", "exceed maximum block range", "response size exceeded")
_RATE_HINTS = ("rate limit", "too many requests", "exceeded its compute units")


def _to_hex_block(n: int) -> str: return hex(int(n))
def _hex_int(x: Any) -> int: return int(x, 16) if isinstance(x, str) else int(x)


def _rpc_error(err: Any, http_status: int | None = None) -> RPCError:
    if not isinstance(err, dict):
        return RPCError(str(err), http_status=http_status)
    code = err.get("code"); msg = str(err.get("message") or "")
    low = msg.lower()
    if code == 429 or any(h in low for h in _RATE_HINTS):
        return RateLimitError(msg, code=code, http_status=http_status)
    if any(h in low for h in _RANGE_HINTS):
        return RangeTooLargeError(msg, code=code, http_status=http_status)
    if code == _LIMIT_CODE:
        return RateLimitError(msg, code=code, http_status=http_status)
    return RPCError(msg, code=code, http_status=http_status)


def _topics_param(topics: Sequence[str | None]) -> list[str | None]:
    out: list[str | None] = []
    for t in topics:
        if t is None:
            out.append(None); continue
        s = str(t).strip().lower()
        if not (s.startswith("0x") and len(s) == 66):
            raise ValueError(f"Invalid topic: {t}")
        out.append(s)
    # trailing wildcards are implied
    while out and out[-1] is None:
        out.pop()
    return out


def _parse_log(rl: dict) -> RawLog:
    try:
        ts = rl.get("blockTimestamp")
        return RawLog(
            address=Address(rl["address"].lower()),
            topics=tuple(t.lower() for t in rl.get("topics", [])),
            data_hex=str(rl.get("data") or "0x"),
            block_number=_hex_int(rl["blockNumber"]),
            tx_hash=TxHash(rl["transactionHash"].lower()),
            log_index=_hex_int(rl["logIndex"]),
            block_timestamp=_hex_int(ts) if ts is not None else None,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise DecodeError(f"malformed log object: {rl!r}") from e


class HttpxRPC(RPCClient):
    """JSON-RPC over a single shared ``httpx.AsyncClient``.

    Errors are raised typed (see ``domain.errors``) and never retried here;
    retrying is the caller's job.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 30,
        max_conn: int = 64,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn // 2)),
            transport=transport,
        )

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        t0 = time.perf_counter()
        r = await self.client.post(self.rpc_url, json=payload)
        logger.debug("%s -> HTTP %d in %.0f ms", method, r.status_code, (time.perf_counter() - t0) * 1000)
        if r.status_code == 429:
            raise RateLimitError(f"{method}: HTTP 429 Too Many Requests", http_status=429)
        if r.status_code >= 500:
            raise ServerError(f"{method}: HTTP {r.status_code}", http_status=r.status_code)
        if r.status_code >= 400:
            # some providers put the JSON-RPC error in a 4xx body
            try:
                data = r.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and "error" in data:
                raise _rpc_error(data["error"], r.status_code)
            r.raise_for_status()
        data = r.json()
        if "error" in data:
            raise _rpc_error(data["error"])
        return data.get("result")

    async def latest_block(self) -> int:
        return _hex_int(await self._call("eth_blockNumber", []))

    async def get_logs(self, address: Address, topics: Sequence[str | None], from_block: int, to_block: int) -> list[RawLog]:
        res = await self._call("eth_getLogs", [{
            "address": str(address).lower(),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": _topics_param(topics),
        }])
        return [_parse_log(rl) for rl in (res or []) if not rl.get("removed", False)]

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self._call("eth_getBlockByNumber", [_to_hex_block(block_number), False])
        if block is None:
            raise NotFoundError(f"block {block_number} not found")
        try:
            return _hex_int(block["timestamp"])
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"block {block_number} has no usable timestamp") from e

    async def get_receipt(self, tx_hash: TxHash) -> Receipt:
        rc = await self._call("eth_getTransactionReceipt", [str(tx_hash)])
        if rc is None:
            raise NotFoundError(f"receipt for {tx_hash} not found")
        try:
            return Receipt(
                tx_hash=TxHash(str(tx_hash).lower()),
                gas_used=_hex_int(rc["gasUsed"]),
                effective_gas_price=_hex_int(rc["effectiveGasPrice"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"receipt for {tx_hash} lacks gasUsed/effectiveGasPrice") from e

    async def aclose(self) -> None:
        await self.client.aclose()
