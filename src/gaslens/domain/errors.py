# gaslens/domain/errors.py
from __future__ import annotations


class GaslensError(Exception):
    """Base class for every error raised by gaslens itself."""


class ConfigurationError(GaslensError):
    """Missing or malformed setting. Raised at startup, never retried."""


class RPCError(GaslensError):
    def __init__(self, message: str, *, code: int | None = None, http_status: int | None = None) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        prefix = f"[{code}] " if code is not None else ""
        super().__init__(f"RPC error {prefix}{message}")


class RateLimitError(RPCError):
    pass


class ServerError(RPCError):
    pass


class NotFoundError(RPCError):
    """Block or receipt not (yet) visible on the node that served the call."""


class RangeTooLargeError(RPCError):
    """Provider refused the query range or result size; shrink the batch instead of retrying."""


class DecodeError(GaslensError):
    pass


class StorageError(GaslensError):
    pass


class NoDataError(GaslensError):
    pass
