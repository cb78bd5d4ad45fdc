from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum, IntFlag
from typing import TYPE_CHECKING, Any, TypedDict

from linux_ssh_client.terminal_modes import EMPTY_TERMINAL_MODES

if TYPE_CHECKING:
    from linux_ssh_client.settings import SSHClientSettings

DEFAULT_WINDOW_SIZE = 2 * 1024 * 1024
DEFAULT_PACKET_SIZE = 32768
DEFAULT_TERMINAL_WIDTH = 80
DEFAULT_TERMINAL_HEIGHT = 24
DEFAULT_SCP_BUFFER_SIZE = 32768
DEFAULT_FILE_MODE = 0o644
TEXT_READ_BUFFER_SIZE = 4096


class SshConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    LOGGED_IN = "logged_in"
    DISPOSED = "disposed"


class SshMethod(IntEnum):
    """Negotiation slots, in the order preferences are applied."""

    KEX = 0
    HOSTKEY = 1
    CRYPT_CS = 2
    CRYPT_SC = 3
    MAC_CS = 4
    MAC_SC = 5
    COMP_CS = 6
    COMP_SC = 7
    LANG_CS = 8
    LANG_SC = 9
    SIGN_ALGO = 10


class SshHashType(IntEnum):
    MD5 = 1
    SHA1 = 2
    SHA256 = 3

    @property
    def digest_size(self) -> int:
        return _HASH_SIZES[self]


_HASH_SIZES = {SshHashType.MD5: 16, SshHashType.SHA1: 20, SshHashType.SHA256: 32}


class SshHostKeyType(IntEnum):
    UNKNOWN = 0
    RSA = 1
    DSS = 2
    ECDSA_256 = 3
    ECDSA_384 = 4
    ECDSA_521 = 5
    ED25519 = 6

    @classmethod
    def from_key_name(cls, name: str) -> SshHostKeyType:
        return _HOST_KEY_NAMES.get(name, cls.UNKNOWN)


_HOST_KEY_NAMES = {
    "ssh-rsa": SshHostKeyType.RSA,
    "rsa-sha2-256": SshHostKeyType.RSA,
    "rsa-sha2-512": SshHostKeyType.RSA,
    "ssh-dss": SshHostKeyType.DSS,
    "ecdsa-sha2-nistp256": SshHostKeyType.ECDSA_256,
    "ecdsa-sha2-nistp384": SshHostKeyType.ECDSA_384,
    "ecdsa-sha2-nistp521": SshHostKeyType.ECDSA_521,
    "ssh-ed25519": SshHostKeyType.ED25519,
}


class TerminalType(str, Enum):
    XTERM = "xterm"
    XTERM_COLOR = "xterm-color"
    XTERM_256_COLOR = "xterm-256color"
    VT100 = "vt100"
    VT220 = "vt220"
    LINUX = "linux"
    SCREEN = "screen"


class TraceLevel(IntFlag):
    NONE = 0
    TRANS = 1 << 1
    KEX = 1 << 2
    AUTH = 1 << 3
    CONN = 1 << 4
    SCP = 1 << 5
    SFTP = 1 << 6
    ERROR = 1 << 7
    PUBLICKEY = 1 << 8
    SOCKET = 1 << 9


@dataclass(frozen=True)
class HostKey:
    key: bytes
    type: SshHostKeyType


@dataclass(frozen=True)
class ScpStat:
    """Remote file metadata reported when an SCP receive channel opens."""

    file_size: int
    mode: int = DEFAULT_FILE_MODE


class CommandResultDict(TypedDict):
    successful: bool
    stdout: str | None
    stderr: str | None
    exit_code: int | None
    exit_signal: str | None


@dataclass(frozen=True)
class CommandResult:
    successful: bool
    stdout: str | None = None
    stderr: str | None = None
    exit_code: int | None = None
    exit_signal: str | None = None

    def to_dict(self) -> CommandResultDict:
        return {
            "successful": self.successful,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
        }


@dataclass(frozen=True)
class CommandExecutionOptions:
    """Channel and pseudo-terminal parameters for a command.

    ``terminal_modes`` must be an encoded RFC 4254 mode string as produced by
    ``TerminalModesBuilder``; the single end-of-modes byte means "use the
    remote defaults".
    """

    window_size: int = DEFAULT_WINDOW_SIZE
    packet_size: int = DEFAULT_PACKET_SIZE
    request_pty: bool = False
    terminal_type: TerminalType = TerminalType.XTERM
    terminal_modes: bytes = field(default=EMPTY_TERMINAL_MODES)
    terminal_width: int = DEFAULT_TERMINAL_WIDTH
    terminal_height: int = DEFAULT_TERMINAL_HEIGHT
    terminal_width_pixels: int = 0
    terminal_height_pixels: int = 0

    @classmethod
    def from_settings(cls, settings: SSHClientSettings, **overrides: Any) -> CommandExecutionOptions:
        values: dict[str, Any] = {
            "window_size": settings.channel_window_size,
            "packet_size": settings.channel_packet_size,
        }
        values.update(overrides)
        return cls(**values)

