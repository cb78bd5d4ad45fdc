"""Error taxonomy for the SSH client.

Exception hierarchy:
    SSHClientError (base)
    ├── SshException             - typed failure carrying an SshErrorKind
    │   └── SshUsageError        - precondition violation (wrong state, bad argument)
    ├── OperationCancelledError  - cooperative cancellation was signalled
    └── CredentialError          - stored credentials missing or unusable

Engine calls report failures as negative integer codes. ``SshErrorKind`` maps
every such code to a named kind; ``raise_if_failed`` turns a negative code
into an ``SshException`` using the engine's last-error text.
"""
from __future__ import annotations

from collections.abc import Callable
from enum import IntEnum
from typing import Protocol


class SshErrorKind(IntEnum):
    """Closed set of failure kinds; values follow the libssh2 status codes."""

    NONE = 0
    SOCKET_NONE = -1
    BANNER_RECV = -2
    BANNER_NONE = -2
    BANNER_SEND = -3
    INVALID_MAC = -4
    KEX_FAILURE = -5
    ALLOC = -6
    SOCKET_SEND = -7
    KEY_EXCHANGE_FAILURE = -8
    TIMEOUT = -9
    HOSTKEY_INIT = -10
    HOSTKEY_SIGN = -11
    DECRYPT = -12
    SOCKET_DISCONNECT = -13
    PROTO = -14
    PASSWORD_EXPIRED = -15
    FILE = -16
    METHOD_NONE = -17
    AUTHENTICATION_FAILED = -18
    PUBLICKEY_UNRECOGNIZED = -18
    PUBLICKEY_UNVERIFIED = -19
    CHANNEL_OUTOFORDER = -20
    CHANNEL_FAILURE = -21
    CHANNEL_REQUEST_DENIED = -22
    CHANNEL_UNKNOWN = -23
    CHANNEL_WINDOW_EXCEEDED = -24
    CHANNEL_PACKET_EXCEEDED = -25
    CHANNEL_CLOSED = -26
    CHANNEL_EOF_SENT = -27
    SCP_PROTOCOL = -28
    ZLIB = -29
    SOCKET_TIMEOUT = -30
    SFTP_PROTOCOL = -31
    REQUEST_DENIED = -32
    METHOD_NOT_SUPPORTED = -33
    INVAL = -34
    INVALID_POLL_TYPE = -35
    PUBLICKEY_PROTOCOL = -36
    EAGAIN = -37
    BUFFER_TOO_SMALL = -38
    BAD_USE = -39
    COMPRESS = -40
    OUT_OF_BOUNDARY = -41
    AGENT_PROTOCOL = -42
    SOCKET_RECV = -43
    ENCRYPT = -44
    BAD_SOCKET = -45
    KNOWN_HOSTS = -46
    CHANNEL_WINDOW_FULL = -47
    KEYFILE_AUTH_FAILED = -48
    RANDGEN = -49
    MISSING_USERAUTH_BANNER = -50
    ALGO_UNSUPPORTED = -51
    MAC_FAILURE = -52
    HASH_INIT = -53
    HASH_CALC = -54

    UNKNOWN = -(2**31)
    FAILED_TO_INITIALIZE_SESSION = 2**31 - 3
    WRAPPED_EXCEPTION = 2**31 - 2
    USAGE_ERROR = 2**31 - 1

    @classmethod
    def from_code(cls, code: int) -> SshErrorKind:
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_transport_failure(self) -> bool:
        """True when the connection itself can no longer be trusted."""
        return self in _TRANSPORT_FAILURES


_TRANSPORT_FAILURES = frozenset(
    {
        SshErrorKind.SOCKET_NONE,
        SshErrorKind.BANNER_RECV,
        SshErrorKind.BANNER_SEND,
        SshErrorKind.INVALID_MAC,
        SshErrorKind.KEX_FAILURE,
        SshErrorKind.SOCKET_SEND,
        SshErrorKind.KEY_EXCHANGE_FAILURE,
        SshErrorKind.TIMEOUT,
        SshErrorKind.DECRYPT,
        SshErrorKind.SOCKET_DISCONNECT,
        SshErrorKind.PROTO,
        SshErrorKind.SOCKET_TIMEOUT,
        SshErrorKind.SOCKET_RECV,
        SshErrorKind.ENCRYPT,
        SshErrorKind.BAD_SOCKET,
        SshErrorKind.MAC_FAILURE,
    }
)


class SSHClientError(Exception):
    """Base class of every error raised by this package.

    Attributes:
        message: human readable description
        details: optional structured context
    """

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured representation suitable for logging.

        Returns:
            dict with error_type, message and details
        """
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class SshException(SSHClientError):
    """A failure classified by ``SshErrorKind``.

    Attributes:
        kind: the error kind
        code: raw engine status code (equal to ``int(kind)`` for synthetic kinds)
    """

    def __init__(
        self,
        message: str,
        kind: SshErrorKind,
        *,
        code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        code = int(kind) if code is None else code
        merged_details = {"kind": kind.name, "code": code, **(details or {})}
        super().__init__(message, details=merged_details)
        self.kind = kind
        self.code = code

    def __str__(self) -> str:
        return f"{self.message} ({self.kind.name})"


class SshUsageError(SshException, ValueError):
    """Raised when an operation is called in the wrong state or with bad input."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message, SshErrorKind.USAGE_ERROR, details=details)


class OperationCancelledError(SSHClientError):
    """Raised at a loop boundary once a CancellationToken has been signalled."""

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)


class CredentialError(SSHClientError):
    """Raised when stored credentials are missing or cannot be used.

    Attributes:
        host: host the credentials were looked up for
        username: user the credentials were looked up for
    """

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        username: str = "",
        details: dict[str, object] | None = None,
    ) -> None:
        merged_details = {"host": host, "username": username, **(details or {})}
        super().__init__(message, details=merged_details)
        self.host = host
        self.username = username


class LastErrorSource(Protocol):
    def last_error(self) -> tuple[int, str]: ...


def error_from_engine(engine: LastErrorSource | None, message: str, rc: int) -> SshException:
    """Build an SshException from the engine's last error, falling back to ``rc``."""
    code, text = (rc, "") if engine is None else engine.last_error()
    if code >= 0:
        code = rc
    full_message = f"{message}: {text}" if text else message
    return SshException(full_message, SshErrorKind.from_code(code), code=code)


def raise_if_failed(
    rc: int,
    engine: LastErrorSource | None,
    message: str,
    *,
    cleanup: Callable[[], object] | None = None,
) -> int:
    """Return ``rc`` unchanged when non-negative, otherwise clean up and raise."""
    if rc >= 0:
        return rc
    if cleanup is not None:
        cleanup()
    raise error_from_engine(engine, message, rc)


def wrap_exception(message: str, exc: BaseException) -> SshException:
    """Convert a non-engine exception into a WRAPPED_EXCEPTION failure."""
    wrapped = SshException(
        f"{message}: {exc}",
        SshErrorKind.WRAPPED_EXCEPTION,
        details={"cause": type(exc).__name__},
    )
    wrapped.__cause__ = exc
    return wrapped
