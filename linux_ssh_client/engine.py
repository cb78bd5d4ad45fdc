"""Boundary between the session core and the SSH protocol engine.

The core never touches key exchange, ciphers or packet framing. It drives an
engine through the primitive calls below, in the libssh2 calling convention:
integer results, negative meaning failure, and ``last_error()`` describing the
most recent failure. Anything implementing these protocols can back a
session; ``ParamikoBackend`` is the default and tests use in-process fakes.
"""
from __future__ import annotations

import socket
import threading
from collections.abc import Iterable
from typing import Protocol

from linux_ssh_client.exceptions import raise_if_failed
from linux_ssh_client.types import ScpStat


class EngineChannel(Protocol):
    def request_pty(
        self,
        term: str,
        modes: bytes,
        width: int,
        height: int,
        width_pixels: int,
        height_pixels: int,
    ) -> int: ...

    def process_startup(self, request: str, message: str) -> int: ...

    def read_ex(self, stream_id: int, buffer: memoryview) -> int: ...

    def write_ex(self, stream_id: int, data: memoryview) -> int: ...

    def send_eof(self) -> int: ...

    def wait_eof(self) -> int: ...

    def close(self) -> int: ...

    def wait_closed(self) -> int: ...

    def get_exit_status(self) -> int | None: ...

    def get_exit_signal(self) -> str | None: ...

    def free(self) -> int: ...


class EngineAgent(Protocol):
    def connect(self) -> int: ...

    def list_identities(self) -> int: ...

    def identities(self) -> Iterable[object]: ...

    def userauth(self, username: str, identity: object) -> int: ...

    def disconnect(self) -> int: ...

    def free(self) -> None: ...


class EngineSession(Protocol):
    def last_error(self) -> tuple[int, str]: ...

    def method_pref(self, method: int, prefs: str) -> int: ...

    def handshake(self, sock: socket.socket, timeout: float | None) -> int: ...

    def set_blocking(self, blocking: bool) -> None: ...

    def set_timeout(self, seconds: float | None) -> None: ...

    def keepalive_config(self, want_reply: bool, interval_seconds: int) -> None: ...

    def keepalive_send(self) -> tuple[int, int]: ...

    def trace(self, bitmask: int) -> int: ...

    def hostkey(self) -> tuple[bytes, int] | None: ...

    def hostkey_hash(self, hash_type: int) -> bytes | None: ...

    def methods(self, method: int) -> str | None: ...

    def disconnect(self, description: str) -> int: ...

    def free(self) -> int: ...

    def channel_open(self, channel_type: str, window_size: int, packet_size: int) -> EngineChannel | None: ...

    def scp_recv(self, path: str) -> tuple[EngineChannel, ScpStat] | None: ...

    def scp_send(self, path: str, mode: int, size: int) -> EngineChannel | None: ...

    def userauth_password(self, username: str, password: str) -> int: ...

    def userauth_publickey_fromfile(
        self,
        username: str,
        public_key_path: str | None,
        private_key_path: str,
        passphrase: str | None,
    ) -> int: ...

    def userauth_publickey_frommemory(
        self,
        username: str,
        public_key: bytes,
        private_key: bytes,
        passphrase: str | None,
    ) -> int: ...

    def userauth_hostbased_fromfile(
        self,
        username: str,
        public_key_path: str,
        private_key_path: str,
        passphrase: str | None,
        hostname: str,
        local_username: str,
    ) -> int: ...

    def agent_init(self) -> EngineAgent | None: ...


class EngineBackend(Protocol):
    name: str

    def init(self) -> int: ...

    def create_session(self) -> EngineSession | None: ...


# Process-wide state: each backend type is initialized at most once and never
# torn down before interpreter exit.
_init_lock = threading.Lock()
_initialized: set[str] = set()


def ensure_engine_initialized(backend: EngineBackend) -> None:
    if backend.name in _initialized:
        return
    with _init_lock:
        if backend.name in _initialized:
            return
        raise_if_failed(backend.init(), None, f"Failed to initialize SSH engine {backend.name!r}")
        _initialized.add(backend.name)


def is_engine_initialized(backend: EngineBackend) -> bool:
    return backend.name in _initialized
