from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from .value_types import Address, ErrorKind, ScanState, Status, TxHash, UINT64_MAX, UINT256_MAX


def _check_uint(name: str, v: int, limit: int) -> None:
    if not isinstance(v, int) or isinstance(v, bool):
        raise TypeError(f"{name} must be int, got {type(v).__name__}")
    if v < 0 or v > limit:
        raise ValueError(f"{name} out of range: {v}")


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1
    def __str__(self) -> str: return f"[{self.start}, {self.end}]"


@dataclass(slots=True, frozen=True)
class RawLog:
    address: Address
    topics: tuple[str, ...]            # lowercased with 0x
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: TxHash
    log_index: int
    block_timestamp: int | None = None  # some providers inline it

    @property
    def key(self) -> tuple[str, int]: return (self.tx_hash, self.log_index)


@dataclass(slots=True, frozen=True)
class Receipt:
    tx_hash: TxHash
    gas_used: int
    effective_gas_price: int


@dataclass(slots=True, frozen=True)
class TransferEvent:
    tx_hash: TxHash
    log_index: int
    block_number: int
    block_timestamp: int
    from_address: Address
    to_address: Address
    value: int                         # token base units, uint256

    def __post_init__(self) -> None:
        _check_uint("log_index", self.log_index, UINT64_MAX)
        _check_uint("block_number", self.block_number, UINT64_MAX)
        _check_uint("value", self.value, UINT256_MAX)

    @property
    def key(self) -> tuple[str, int]: return (self.tx_hash, self.log_index)

    @property
    def event_date(self) -> date:
        return datetime.fromtimestamp(self.block_timestamp, tz=timezone.utc).date()


@dataclass(slots=True, frozen=True)
class EnrichedEvent(TransferEvent):
    gas_used: int = 0
    effective_gas_price: int = 0       # wei
    gas_cost: int = 0                  # wei, gas_used * effective_gas_price

    def __post_init__(self) -> None:
        TransferEvent.__post_init__(self)
        _check_uint("gas_used", self.gas_used, UINT64_MAX)
        _check_uint("effective_gas_price", self.effective_gas_price, UINT256_MAX)
        _check_uint("gas_cost", self.gas_cost, UINT256_MAX)
        if self.gas_cost != self.gas_used * self.effective_gas_price:
            raise ValueError("gas_cost must equal gas_used * effective_gas_price")

    @classmethod
    def from_transfer(cls, ev: TransferEvent, receipt: Receipt) -> "EnrichedEvent":
        return cls(
            tx_hash=ev.tx_hash, log_index=ev.log_index, block_number=ev.block_number,
            block_timestamp=ev.block_timestamp, from_address=ev.from_address,
            to_address=ev.to_address, value=ev.value,
            gas_used=receipt.gas_used,
            effective_gas_price=receipt.effective_gas_price,
            gas_cost=receipt.gas_used * receipt.effective_gas_price,
        )


@dataclass(slots=True)
class CollectionProgress:
    target_events: int
    events_collected: int = 0
    blocks_processed: int = 0
    current_block: int = 0             # next block to scan
    chain_head: int = 0
    is_complete: bool = False
    state: ScanState = "idle"
    segments: int = 1

    def advance(self, rng: BlockRange, events: int) -> None:
        if rng.end + 1 < self.current_block:
            raise ValueError(f"cursor would move backwards: {self.current_block} -> {rng.end + 1}")
        self.events_collected += events
        self.blocks_processed += rng.span()
        self.current_block = rng.end + 1

    def should_continue(self) -> bool:
        return self.events_collected < self.target_events and self.current_block < self.chain_head

    def finish(self, *, stopped: bool) -> "CollectionProgress":
        self.is_complete = (self.events_collected >= self.target_events
                            or self.current_block >= self.chain_head)
        self.state = "stopped" if (stopped and not self.is_complete) else "completed"
        return self


@dataclass(slots=True, frozen=True)
class RetryContext:
    attempt: int
    delay_s: float
    kind: ErrorKind


@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Status = "pending"
    attempts: int = 0
    error: str | None = None
    logs: int = 0
    events: int = 0
    updated_at: float = 0.0
    details: dict = field(default_factory=dict)
