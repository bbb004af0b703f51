from __future__ import annotations

from eth_utils import keccak

from .errors import DecodeError
from .models import RawLog, TransferEvent
from .value_types import Address, TxHash

# keccak("Transfer(address,address,uint256)")
TRANSFER_T0 = "0x" + keccak(text="Transfer(address,address,uint256)").hex()


def _strip0x(s: str) -> str:
    return s[2:] if s[:2].lower() == "0x" else s


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte indexed topic."""
    h = _strip0x(address).lower()
    if len(h) != 40:
        raise ValueError(f"Invalid address: {address}")
    return "0x" + "0" * 24 + h


def _addr_from_topic(t: str) -> Address:
    h = _strip0x(t).lower()
    if len(h) != 64:
        raise DecodeError(f"indexed topic is not 32 bytes: {t}")
    if h[:24] != "0" * 24:
        raise DecodeError(f"indexed topic is not a left-padded address: {t}")
    return Address("0x" + h[-40:])


def decode_transfer(log: RawLog, block_timestamp: int) -> TransferEvent:
    """Decode a raw ``Transfer(address indexed, address indexed, uint256)`` log.

    The log must carry exactly three topics (signature, from, to) and a single
    32-byte data word. Anything else raises ``DecodeError``.
    """
    if not log.topics or log.topics[0].lower() != TRANSFER_T0:
        raise DecodeError(f"log {log.tx_hash}:{log.log_index} is not an ERC-20 Transfer")
    if len(log.topics) != 3:
        raise DecodeError(
            f"log {log.tx_hash}:{log.log_index} has {len(log.topics)} topics, expected 3"
        )
    h = _strip0x(log.data_hex or "0x")
    if len(h) != 64:
        raise DecodeError(
            f"log {log.tx_hash}:{log.log_index} data is {len(h) // 2} bytes, expected 32"
        )
    try:
        value = int(h, 16)
    except ValueError as e:
        raise DecodeError(f"log {log.tx_hash}:{log.log_index} data is not hex") from e

    return TransferEvent(
        tx_hash=TxHash(log.tx_hash.lower()),
        log_index=log.log_index,
        block_number=log.block_number,
        block_timestamp=block_timestamp,
        from_address=_addr_from_topic(log.topics[1]),
        to_address=_addr_from_topic(log.topics[2]),
        value=value,
    )
