# gaslens/ports/rpc.py
from __future__ import annotations

from typing import Protocol, Sequence
from ..domain.models import RawLog, Receipt
from ..domain.value_types import Address, TxHash


class RPCClient(Protocol):
    """Port defining the contract for an Ethereum JSON-RPC client."""

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def get_logs(
        self,
        address: Address,
        topics: Sequence[str | None],
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """Return normalized, typed logs for [from_block, to_block] inclusive.

        ``topics`` is positional; ``None`` matches any value in that slot.
        """

    async def get_block_timestamp(self, block_number: int) -> int:
        """Return the unix timestamp of the block header."""

    async def get_receipt(self, tx_hash: TxHash) -> Receipt:
        """Return gas data from the transaction receipt."""

    async def aclose(self) -> None:
        """Release the underlying connection pool."""
