from __future__ import annotations

import hashlib
import re
import socket
from collections.abc import Callable, Iterator

import pytest

from linux_ssh_client.credentials import PasswordCredential
from linux_ssh_client.exceptions import SshErrorKind
from linux_ssh_client.session import SshSession
from linux_ssh_client.settings import SSHClientSettings
from linux_ssh_client.types import ScpStat, SshHashType, SshHostKeyType, SshMethod

HOST_KEY = b"\x00\x00\x00\x0bssh-ed25519" + bytes(range(32))


class FakeChannel:
    def __init__(
        self,
        engine: FakeEngineSession,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        chunk: int = 7,
        on_free: Callable[[FakeChannel], None] | None = None,
    ) -> None:
        self.engine = engine
        self.streams = {0: bytearray(stdout), 1: bytearray(stderr)}
        self.chunk = chunk
        self.on_free = on_free
        self.written = bytearray()
        self.write_limit: int | None = None
        self.write_error: int | None = None
        self.read_error: int | None = None
        self.pty: tuple | None = None
        self.request: tuple[str, str] | None = None
        self.exit_status: int | None = None
        self.exit_signal: str | None = None
        self.closed = False
        self.free_count = 0
        self.calls: list[str] = []

    def request_pty(self, term, modes, width, height, width_pixels, height_pixels) -> int:
        self.calls.append("request_pty")
        self.pty = (term, modes, width, height, width_pixels, height_pixels)
        if self.engine.server.pty_rc < 0:
            return self.engine.fail(self.engine.server.pty_rc, "pty denied")
        return 0

    def process_startup(self, request: str, message: str) -> int:
        self.calls.append("process_startup")
        self.request = (request, message)
        if self.engine.server.exec_rc < 0:
            return self.engine.fail(self.engine.server.exec_rc, "exec denied")
        stdout, stderr, status, signal = self.engine.server.run(message, self.pty)
        self.streams[0] += stdout
        self.streams[1] += stderr
        self.exit_status = status
        self.exit_signal = signal
        return 0

    def read_ex(self, stream_id: int, buffer: memoryview) -> int:
        self.calls.append(f"read_{stream_id}")
        if self.read_error is not None:
            return self.read_error
        data = self.streams[stream_id]
        n = min(len(buffer), len(data), self.chunk)
        buffer[:n] = data[:n]
        del data[:n]
        return n

    def write_ex(self, stream_id: int, data: memoryview) -> int:
        self.calls.append(f"write_{stream_id}")
        if self.write_error is not None:
            return self.write_error
        n = len(data) if self.write_limit is None else min(self.write_limit, len(data))
        self.written += data[:n]
        return n

    def send_eof(self) -> int:
        self.calls.append("send_eof")
        return 0

    def wait_eof(self) -> int:
        self.calls.append("wait_eof")
        return 0

    def close(self) -> int:
        self.calls.append("close")
        self.closed = True
        return 0

    def wait_closed(self) -> int:
        self.calls.append("wait_closed")
        return 0

    def get_exit_status(self) -> int | None:
        return self.exit_status

    def get_exit_signal(self) -> str | None:
        return self.exit_signal

    def free(self) -> int:
        self.free_count += 1
        if self.on_free is not None:
            self.on_free(self)
        return 0


class FakeAgent:
    def __init__(self, engine: FakeEngineSession, identities: list[str], *, connect_rc: int = 0) -> None:
        self.engine = engine
        self._identities = identities
        self.connect_rc = connect_rc
        self.tried: list[str] = []
        self.disconnected = False
        self.freed = False

    def connect(self) -> int:
        return self.connect_rc

    def list_identities(self) -> int:
        return 0

    def identities(self):
        return list(self._identities)

    def userauth(self, username: str, identity: object) -> int:
        self.tried.append(identity)
        if self.engine.server.agent_userauth_rc is not None:
            return self.engine.fail(self.engine.server.agent_userauth_rc, "Connection lost during agent authentication")
        return 0 if identity in self.engine.server.agent_accepts else SshErrorKind.PUBLICKEY_UNVERIFIED

    def disconnect(self) -> int:
        self.disconnected = True
        return 0

    def free(self) -> None:
        self.freed = True


class FakeEngineSession:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.calls: list[tuple] = []
        self.last = (0, "")
        self.free_count = 0
        self.channels: list[FakeChannel] = []
        self.timeout: float | None = None
        self.agent: FakeAgent | None = None

    def fail(self, code: int, message: str) -> int:
        self.last = (int(code), message)
        return int(code)

    def last_error(self) -> tuple[int, str]:
        return self.last

    def method_pref(self, method: int, prefs: str) -> int:
        self.calls.append(("method_pref", SshMethod(method), prefs))
        return 0

    def handshake(self, sock, timeout) -> int:
        self.calls.append(("handshake", timeout))
        if self.server.handshake_rc < 0:
            return self.fail(self.server.handshake_rc, "kex failed")
        return 0

    def set_blocking(self, blocking: bool) -> None:
        self.calls.append(("set_blocking", blocking))

    def set_timeout(self, seconds: float | None) -> None:
        self.calls.append(("set_timeout", seconds))
        self.timeout = seconds

    def keepalive_config(self, want_reply: bool, interval_seconds: int) -> None:
        self.calls.append(("keepalive_config", want_reply, interval_seconds))

    def keepalive_send(self) -> tuple[int, int]:
        self.calls.append(("keepalive_send",))
        return 0, 15

    def trace(self, bitmask: int) -> int:
        self.calls.append(("trace", bitmask))
        return 0

    def hostkey(self):
        self.calls.append(("hostkey",))
        return HOST_KEY, SshHostKeyType.ED25519

    def hostkey_hash(self, hash_type: int):
        self.calls.append(("hostkey_hash", hash_type))
        name = {SshHashType.MD5: "md5", SshHashType.SHA1: "sha1", SshHashType.SHA256: "sha256"}[hash_type]
        return hashlib.new(name, HOST_KEY).digest() + b"padding"

    def methods(self, method: int):
        self.calls.append(("methods", method))
        return self.server.negotiated.get(SshMethod(method))

    def disconnect(self, description: str) -> int:
        self.calls.append(("disconnect", description))
        return 0

    def free(self) -> int:
        self.calls.append(("free",))
        self.free_count += 1
        return 0

    def channel_open(self, channel_type: str, window_size: int, packet_size: int):
        self.calls.append(("channel_open", channel_type, window_size, packet_size))
        if self.server.channel_open_fails:
            self.fail(SshErrorKind.CHANNEL_FAILURE, "no channel")
            return None
        channel = FakeChannel(self)
        self.channels.append(channel)
        return channel

    def scp_recv(self, path: str):
        self.calls.append(("scp_recv", path))
        if path not in self.server.files:
            self.fail(SshErrorKind.SCP_PROTOCOL, f"scp: {path}: No such file or directory")
            return None
        data = self.server.files[path]
        # trailing bytes past the announced size must never reach the caller
        channel = FakeChannel(self, stdout=data + b"\x00trailer", chunk=self.server.chunk)
        self.channels.append(channel)
        return channel, ScpStat(file_size=len(data), mode=self.server.modes.get(path, 0o644))

    def scp_send(self, path: str, mode: int, size: int):
        self.calls.append(("scp_send", path, mode, size))

        def store(channel: FakeChannel) -> None:
            self.server.files[path] = bytes(channel.written)
            self.server.modes[path] = mode

        channel = FakeChannel(self, on_free=store)
        self.channels.append(channel)
        return channel

    def userauth_password(self, username: str, password: str) -> int:
        self.calls.append(("userauth_password", username))
        if self.server.auth_error is not None:
            return self.fail(self.server.auth_error, "transport broke")
        if self.server.passwords.get(username) == password:
            return 0
        return self.fail(SshErrorKind.AUTHENTICATION_FAILED, "bad password")

    def userauth_publickey_fromfile(self, username, public_key_path, private_key_path, passphrase) -> int:
        self.calls.append(("userauth_publickey_fromfile", username, public_key_path, private_key_path, passphrase))
        if (private_key_path, public_key_path) in self.server.accepted_key_files:
            return 0
        return self.fail(SshErrorKind.PUBLICKEY_UNVERIFIED, "key rejected")

    def userauth_publickey_frommemory(self, username, public_key, private_key, passphrase) -> int:
        self.calls.append(("userauth_publickey_frommemory", username))
        if private_key in self.server.accepted_memory_keys:
            return 0
        return self.fail(SshErrorKind.PUBLICKEY_UNVERIFIED, "key rejected")

    def userauth_hostbased_fromfile(self, username, public_key_path, private_key_path, passphrase, hostname, local_username) -> int:
        self.calls.append(("userauth_hostbased_fromfile", username, hostname, local_username))
        return 0

    def agent_init(self):
        self.calls.append(("agent_init",))
        if self.server.agent_identities is None:
            return None
        self.agent = FakeAgent(self, self.server.agent_identities, connect_rc=self.server.agent_connect_rc)
        return self.agent


class FakeServer:
    """Remote side shared by every engine session a FakeBackend creates."""

    def __init__(self) -> None:
        self.passwords = {"root": "secret"}
        self.accepted_key_files: set[tuple[str, str | None]] = set()
        self.accepted_memory_keys: set[bytes] = set()
        self.agent_identities: list[str] | None = None
        self.agent_accepts: set[str] = set()
        self.agent_connect_rc = 0
        self.agent_userauth_rc: int | None = None
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.negotiated = {
            SshMethod.KEX: "curve25519-sha256",
            SshMethod.HOSTKEY: "ssh-ed25519",
            SshMethod.CRYPT_CS: "aes256-ctr",
            SshMethod.CRYPT_SC: "aes256-ctr",
        }
        self.commands: dict[str, tuple[bytes, bytes, int | None, str | None]] = {}
        self.handshake_rc = 0
        self.pty_rc = 0
        self.exec_rc = 0
        self.auth_error: int | None = None
        self.channel_open_fails = False
        self.chunk = 4096

    def run(self, command: str, pty: tuple | None) -> tuple[bytes, bytes, int | None, str | None]:
        if command in self.commands:
            return self.commands[command]
        if command == "echo $TERM":
            return ((pty[0] if pty else "dumb") + "\n").encode(), b"", 0, None
        if command == "tput cols":
            return (f"{pty[2]}\n" if pty else "80\n").encode(), b"", 0, None
        if match := re.fullmatch(r"exit (\d+)", command):
            return b"", b"", int(match.group(1)), None
        if match := re.fullmatch(r"echo (.*) >&2", command):
            return b"", (match.group(1) + "\n").encode(), 0, None
        if match := re.fullmatch(r"echo (.*)", command):
            return (match.group(1) + "\n").encode(), b"", 0, None
        return b"", f"sh: 1: {command}: not found\n".encode(), 127, None


class FakeBackend:
    def __init__(self, server: FakeServer | None = None, *, name: str = "fake", init_rc: int = 0) -> None:
        self.name = name
        self.server = server or FakeServer()
        self.init_rc = init_rc
        self.init_calls = 0
        self.sessions: list[FakeEngineSession] = []
        self.create_fails = False

    def init(self) -> int:
        self.init_calls += 1
        return self.init_rc

    def create_session(self):
        if self.create_fails:
            return None
        engine = FakeEngineSession(self.server)
        self.sessions.append(engine)
        return engine

    @property
    def engine(self) -> FakeEngineSession:
        return self.sessions[-1]


@pytest.fixture
def ssh_server() -> Iterator[tuple[str, int]]:
    """A local listening socket that accepts TCP connections for the fake engine."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(16)
    try:
        yield listener.getsockname()
    finally:
        listener.close()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def settings() -> SSHClientSettings:
    return SSHClientSettings()


@pytest.fixture
def session(backend: FakeBackend, settings: SSHClientSettings) -> Iterator[SshSession]:
    with SshSession(backend=backend, settings=settings) as s:
        yield s


@pytest.fixture
def connected_session(session: SshSession, ssh_server: tuple[str, int]) -> SshSession:
    session.connect(*ssh_server)
    return session


@pytest.fixture
def logged_in_session(connected_session: SshSession) -> SshSession:
    assert connected_session.authenticate(PasswordCredential("root", "secret"))
    return connected_session
