"""Exception taxonomy for the streaming completion pipeline.

Every error carries a stable ``kind`` string that is forwarded to callers
in ``error`` events, and a ``retryable`` flag consulted by the upstream
client before its first fragment is delivered.
"""

from __future__ import annotations


class NexusStreamError(Exception):
    """Base class for all pipeline errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(NexusStreamError):
    """Missing credentials or invalid configuration.  Fails fast."""

    kind = "configuration"


class TransportError(NexusStreamError):
    """Connection or HTTP-level failure talking to the provider.

    ``retryable`` is decided at raise time: pre-stream connection failures
    and 429/5xx responses are retryable; anything raised after the first
    fragment was delivered is not.
    """

    kind = "transport"

    def __init__(
        self,
        message: str = "",
        *,
        retryable: bool = True,
        status_code: int | None = None,
        mid_stream: bool = False,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable and not mid_stream
        self.status_code = status_code
        self.mid_stream = mid_stream


class AuthError(NexusStreamError):
    """Provider rejected the credentials (401/403).  Never retried."""

    kind = "auth"


class StreamTimeoutError(NexusStreamError):
    """The global deadline for a completion call was exceeded."""

    kind = "timeout"

    def __init__(self, message: str = "", *, deadline: float = 0.0) -> None:
        super().__init__(message)
        self.deadline = deadline


class UpstreamProtocolError(NexusStreamError):
    """A stream payload could not be interpreted.  The fragment is skipped."""

    kind = "protocol"


class DecodeError(NexusStreamError):
    """A structured record payload could not be decoded.  The record is skipped."""

    kind = "decode"

    def __init__(self, message: str = "", *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceError(NexusStreamError):
    """A store write failed while finalizing a session."""

    kind = "persistence"
