from __future__ import annotations
from typing import NewType, Literal

Address = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
Status  = Literal["pending", "done", "failed", "checkpoint"]
ScanState = Literal["idle", "resuming", "scanning", "stopped", "completed"]
ErrorKind = Literal["rate_limit", "network", "server", "not_found", "range_too_large", "fatal"]

UINT64_MAX  = (1 << 64) - 1
UINT256_MAX = (1 << 256) - 1
