from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from eth_utils import is_address

from ..domain.errors import ConfigurationError
from ..domain.value_types import Address


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once at startup."""

    rpc_url: str
    target_address: Address
    contract_address: Address
    target_events: int = 5_000
    batch_size: int = 2_000
    batch_delay_ms: int = 500
    max_retries: int = 5
    initial_retry_delay_ms: int = 1_000
    max_retry_delay_ms: int = 30_000
    rpc_timeout_s: int = 30
    lookback_days: int = 30
    block_time_s: int = 12
    segment_block_limit: int = 500_000
    adaptive_shrink: bool = False
    data_dir: Path = Path("./data")
    network: str = "ethereum-mainnet"
    token_symbol: str = "USDC"
    log_level: str = "INFO"

    @property
    def store_dir(self) -> Path: return self.data_dir / "store"

    @property
    def manifests_dir(self) -> Path: return self.data_dir / "manifests"

    @property
    def checkpoint_path(self) -> Path: return self.data_dir / "checkpoint.json"


def _require(env: Mapping[str, str], *keys: str) -> str:
    for k in keys:
        v = env.get(k, "").strip()
        if v:
            return v
    raise ConfigurationError(f"Missing required environment variable: {keys[0]}")


def _address(env: Mapping[str, str], *keys: str) -> Address:
    v = _require(env, *keys)
    if not is_address(v):
        raise ConfigurationError(f"Invalid Ethereum address for {keys[0]}: {v}")
    return Address(v.lower())


def _int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        v = int(raw.replace("_", ""))
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None
    if v < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {v}")
    return v


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")


def load_settings(env: Mapping[str, str] | None = None, **overrides: object) -> Settings:
    """Build ``Settings`` from the environment; non-None ``overrides`` win.

    Raises ``ConfigurationError`` on any missing or malformed value.
    """
    env = os.environ if env is None else env
    values: dict[str, object] = dict(
        rpc_url=env.get("ETH_RPC_URL", "").strip(),
        target_address=env.get("TARGET_ADDRESS", "").strip(),
        contract_address=(env.get("TOKEN_CONTRACT", "") or env.get("USDC_CONTRACT", "")).strip(),
        target_events=_int(env, "MIN_EVENTS", 5_000),
        batch_size=_int(env, "BLOCK_BATCH_SIZE", 2_000, minimum=1),
        batch_delay_ms=_int(env, "BATCH_DELAY_MS", 500),
        max_retries=_int(env, "MAX_RETRIES", 5),
        initial_retry_delay_ms=_int(env, "INITIAL_RETRY_DELAY_MS", 1_000),
        max_retry_delay_ms=_int(env, "MAX_RETRY_DELAY_MS", 30_000),
        rpc_timeout_s=_int(env, "RPC_TIMEOUT_S", 30, minimum=1),
        lookback_days=_int(env, "LOOKBACK_DAYS", 30),
        block_time_s=_int(env, "BLOCK_TIME_S", 12, minimum=1),
        segment_block_limit=_int(env, "SEGMENT_BLOCK_LIMIT", 500_000, minimum=1),
        adaptive_shrink=_bool(env, "ADAPTIVE_BATCH", False),
        data_dir=Path(env.get("DATA_DIR", "").strip() or "./data"),
        network=env.get("NETWORK", "").strip() or "ethereum-mainnet",
        token_symbol=env.get("TOKEN_SYMBOL", "").strip() or "USDC",
        log_level=(env.get("LOG_LEVEL", "").strip() or "INFO").upper(),
    )
    values.update({k: v for k, v in overrides.items() if v is not None})

    merged = {
        "ETH_RPC_URL": str(values["rpc_url"]),
        "TARGET_ADDRESS": str(values["target_address"]),
        "TOKEN_CONTRACT": str(values["contract_address"]),
    }
    values["rpc_url"] = _require(merged, "ETH_RPC_URL")
    if not str(values["rpc_url"]).startswith(("http://", "https://")):
        raise ConfigurationError(f"ETH_RPC_URL must be an http(s) URL, got {values['rpc_url']!r}")
    values["target_address"] = _address(merged, "TARGET_ADDRESS")
    values["contract_address"] = _address(merged, "TOKEN_CONTRACT")
    if not isinstance(values["data_dir"], Path):
        values["data_dir"] = Path(str(values["data_dir"]))
    if int(values["max_retry_delay_ms"]) < int(values["initial_retry_delay_ms"]):
        raise ConfigurationError("MAX_RETRY_DELAY_MS must be >= INITIAL_RETRY_DELAY_MS")
    return Settings(**values)  # type: ignore[arg-type]
