"""Engine backed by paramiko.

Adapts ``paramiko.Transport`` to the integer-status calling convention of
``linux_ssh_client.engine``. Every public method catches paramiko and socket
exceptions, records them as the last error and returns a negative code.

Differences from a libssh2 engine:
    * paramiko keeps one algorithm list per negotiation slot, so client->server
      and server->client preferences are merged; the last one set wins.
    * exit signals are not parsed by paramiko and are always reported as None.
    * host-based authentication is not implemented and reports
      METHOD_NOT_SUPPORTED.
    * SCP runs the remote ``scp`` binary in sink (-t) or source (-f) mode.
"""
from __future__ import annotations

import hashlib
import io
import logging
import os
import posixpath
import shlex
import socket
import sys
import time
from collections.abc import Callable, Iterable

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST, cMSG_DISCONNECT
from paramiko.message import Message
from paramiko.ssh_exception import IncompatiblePeer

from linux_ssh_client.exceptions import SshErrorKind
from linux_ssh_client.types import ScpStat, SshHashType, SshHostKeyType, SshMethod, TraceLevel

_DISCONNECT_BY_APPLICATION = 11
_CLOSE_POLL_INTERVAL = 0.01
_PRIVATE_KEY_TYPES: tuple[type[paramiko.PKey], ...] = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)
_HASH_NAMES = {SshHashType.MD5: "md5", SshHashType.SHA1: "sha1", SshHashType.SHA256: "sha256"}

# slot -> (SecurityOptions attribute, table of names paramiko supports)
_PREFERENCE_SLOTS: dict[SshMethod, tuple[str, dict]] = {
    SshMethod.KEX: ("kex", paramiko.Transport._kex_info),
    SshMethod.HOSTKEY: ("key_types", paramiko.Transport._key_info),
    SshMethod.CRYPT_CS: ("ciphers", paramiko.Transport._cipher_info),
    SshMethod.CRYPT_SC: ("ciphers", paramiko.Transport._cipher_info),
    SshMethod.MAC_CS: ("digests", paramiko.Transport._mac_info),
    SshMethod.MAC_SC: ("digests", paramiko.Transport._mac_info),
    SshMethod.COMP_CS: ("compression", paramiko.Transport._compression_info),
    SshMethod.COMP_SC: ("compression", paramiko.Transport._compression_info),
}

_NEGOTIATED_ATTRIBUTES = {
    SshMethod.HOSTKEY: "host_key_type",
    SshMethod.CRYPT_CS: "local_cipher",
    SshMethod.CRYPT_SC: "remote_cipher",
    SshMethod.MAC_CS: "local_mac",
    SshMethod.MAC_SC: "remote_mac",
    SshMethod.COMP_CS: "local_compression",
    SshMethod.COMP_SC: "remote_compression",
}


class ScpProtocolError(Exception):
    pass


class _EngineFailure(Exception):
    def __init__(self, kind: SshErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def error_code_for(exc: BaseException) -> int:
    """Closest libssh2 status code for an exception raised by paramiko or a socket."""
    if isinstance(exc, _EngineFailure):
        return exc.kind
    if isinstance(exc, ScpProtocolError):
        return SshErrorKind.SCP_PROTOCOL
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return SshErrorKind.TIMEOUT
    if isinstance(exc, paramiko.PasswordRequiredException):
        return SshErrorKind.FILE
    if isinstance(exc, paramiko.AuthenticationException):
        return SshErrorKind.AUTHENTICATION_FAILED
    if isinstance(exc, paramiko.ChannelException):
        return SshErrorKind.CHANNEL_FAILURE
    if isinstance(exc, IncompatiblePeer):
        return SshErrorKind.KEX_FAILURE
    if isinstance(exc, paramiko.SSHException):
        text = str(exc).lower()
        if "banner" in text:
            return SshErrorKind.BANNER_RECV
        if "timed out" in text or "timeout" in text:
            return SshErrorKind.TIMEOUT
        if "incompatible" in text:
            return SshErrorKind.KEX_FAILURE
        return SshErrorKind.PROTO
    if isinstance(exc, EOFError):
        return SshErrorKind.SOCKET_DISCONNECT
    if isinstance(exc, BrokenPipeError):
        return SshErrorKind.SOCKET_SEND
    if isinstance(exc, OSError):
        return SshErrorKind.SOCKET_DISCONNECT
    if isinstance(exc, ValueError):
        return SshErrorKind.INVAL
    return SshErrorKind.UNKNOWN


def _read_line(chan: paramiko.Channel, limit: int = 4096) -> bytes:
    line = bytearray()
    while len(line) < limit:
        byte = chan.recv(1)
        if not byte:
            break
        line += byte
        if byte == b"\n":
            break
    return bytes(line)


def _read_ack(chan: paramiko.Channel) -> None:
    code = chan.recv(1)
    if code == b"\x00":
        return
    if not code:
        raise ScpProtocolError("unexpected end of SCP stream")
    message = _read_line(chan).decode("utf-8", errors="replace").strip()
    raise ScpProtocolError(message or f"remote scp error (status {code[0]})")


def _load_private_key(open_key: Callable[[], io.StringIO], passphrase: str | None) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_type in _PRIVATE_KEY_TYPES:
        try:
            return key_type.from_private_key(open_key(), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise _EngineFailure(SshErrorKind.FILE, f"Unable to load private key: {last_error}")


def _read_key_file(path: str) -> str:
    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
            return f.read()
    except OSError as exc:
        raise _EngineFailure(SshErrorKind.FILE, f"Unable to read key file {path}: {exc}") from exc


class ParamikoChannel:
    def __init__(self, chan: paramiko.Channel, owner: ParamikoSession) -> None:
        self._chan = chan
        self._owner = owner

    def request_pty(
        self,
        term: str,
        modes: bytes,
        width: int,
        height: int,
        width_pixels: int,
        height_pixels: int,
    ) -> int:
        # Channel.get_pty always sends empty modes; build the request by hand.
        def send() -> None:
            chan = self._chan
            if chan.closed or not chan.active:
                raise _EngineFailure(SshErrorKind.CHANNEL_CLOSED, "Channel is not open")
            m = Message()
            m.add_byte(cMSG_CHANNEL_REQUEST)
            m.add_int(chan.remote_chanid)
            m.add_string("pty-req")
            m.add_boolean(True)
            m.add_string(term)
            m.add_int(width)
            m.add_int(height)
            m.add_int(width_pixels)
            m.add_int(height_pixels)
            m.add_string(modes)
            chan._event_pending()
            chan.transport._send_user_message(m)
            chan._wait_for_event()

        return self._owner._call(send, failure=SshErrorKind.CHANNEL_REQUEST_DENIED)

    def process_startup(self, request: str, message: str) -> int:
        if request == "exec":
            return self._owner._call(lambda: self._chan.exec_command(message), failure=SshErrorKind.CHANNEL_REQUEST_DENIED)
        if request == "subsystem":
            return self._owner._call(lambda: self._chan.invoke_subsystem(message), failure=SshErrorKind.CHANNEL_REQUEST_DENIED)
        if request == "shell":
            return self._owner._call(self._chan.invoke_shell, failure=SshErrorKind.CHANNEL_REQUEST_DENIED)
        return self._owner._fail(SshErrorKind.INVAL, f"Unsupported process request {request!r}")

    def read_ex(self, stream_id: int, buffer: memoryview) -> int:
        try:
            data = self._chan.recv_stderr(len(buffer)) if stream_id == 1 else self._chan.recv(len(buffer))
        except Exception as exc:
            return self._owner._fail_from(exc)
        buffer[: len(data)] = data
        return len(data)

    def write_ex(self, stream_id: int, data: memoryview) -> int:
        try:
            return self._chan.send_stderr(bytes(data)) if stream_id == 1 else self._chan.send(bytes(data))
        except Exception as exc:
            return self._owner._fail_from(exc)

    def send_eof(self) -> int:
        return self._owner._call(self._chan.shutdown_write)

    def wait_eof(self) -> int:
        def drain() -> None:
            while self._chan.recv(32768):
                pass

        return self._owner._call(drain)

    def close(self) -> int:
        def close() -> None:
            # paramiko drops requests for a channel once it is closed locally,
            # so collect the exit status first when the remote is finishing
            if self._chan.eof_received:
                self._chan.status_event.wait(self._owner.timeout)
            self._chan.close()

        return self._owner._call(close)

    def wait_closed(self) -> int:
        def wait() -> None:
            chan = self._chan
            if not chan.closed:
                raise _EngineFailure(SshErrorKind.CHANNEL_UNKNOWN, "Channel was not closed")
            # paramiko unlinks the channel when the peer's CHANNEL_CLOSE arrives
            transport = chan.get_transport()
            timeout = self._owner.timeout
            deadline = None if timeout is None else time.monotonic() + timeout
            while transport is not None and transport.is_active() and transport._channels.get(chan.get_id()) is chan:
                if deadline is not None and time.monotonic() >= deadline:
                    raise _EngineFailure(SshErrorKind.TIMEOUT, "Timed out waiting for the remote channel close")
                time.sleep(_CLOSE_POLL_INTERVAL)

        return self._owner._call(wait)

    def get_exit_status(self) -> int | None:
        status = self._chan.exit_status
        return None if status < 0 else status

    def get_exit_signal(self) -> str | None:
        return None

    def free(self) -> int:
        if not self._chan.closed:
            self._chan.close()
        return 0


class ParamikoScpSendChannel(ParamikoChannel):
    def send_eof(self) -> int:
        def finish() -> None:
            self._chan.sendall(b"\x00")
            _read_ack(self._chan)
            self._chan.shutdown_write()

        return self._owner._call(finish)


class ParamikoScpReceiveChannel(ParamikoChannel):
    """Stops reading at the announced size so the trailing status byte stays unread."""

    def __init__(self, chan: paramiko.Channel, owner: ParamikoSession, size: int) -> None:
        super().__init__(chan, owner)
        self._remaining = size

    def read_ex(self, stream_id: int, buffer: memoryview) -> int:
        if stream_id != 0:
            return super().read_ex(stream_id, buffer)
        if self._remaining <= 0:
            return 0
        read = super().read_ex(stream_id, buffer[: min(len(buffer), self._remaining)])
        if read > 0:
            self._remaining -= read
        return read

    def send_eof(self) -> int:
        def finish() -> None:
            if self._remaining > 0:
                raise ScpProtocolError(f"transfer ended with {self._remaining} bytes outstanding")
            _read_ack(self._chan)
            self._chan.sendall(b"\x00")
            self._chan.shutdown_write()

        return self._owner._call(finish)


class ParamikoAgent:
    def __init__(self, owner: ParamikoSession) -> None:
        self._owner = owner
        self._agent: paramiko.Agent | None = None
        self._keys: tuple[paramiko.AgentKey, ...] = ()

    def connect(self) -> int:
        if sys.platform != "win32" and not os.environ.get("SSH_AUTH_SOCK"):
            return self._owner._fail(SshErrorKind.AGENT_PROTOCOL, "SSH_AUTH_SOCK is not set")
        try:
            self._agent = paramiko.Agent()
        except Exception as exc:
            return self._owner._fail(SshErrorKind.AGENT_PROTOCOL, f"Unable to connect to agent: {exc}")
        return 0

    def list_identities(self) -> int:
        if self._agent is None:
            return self._owner._fail(SshErrorKind.AGENT_PROTOCOL, "Agent is not connected")
        self._keys = tuple(self._agent.get_keys())
        return 0

    def identities(self) -> Iterable[object]:
        return self._keys

    def userauth(self, username: str, identity: object) -> int:
        return self._owner._authenticate(
            lambda transport: transport.auth_publickey(username, identity),
            SshErrorKind.PUBLICKEY_UNVERIFIED,
        )

    def disconnect(self) -> int:
        if self._agent is not None:
            self._agent.close()
        return 0

    def free(self) -> None:
        self._agent = None
        self._keys = ()


class ParamikoSession:
    def __init__(self) -> None:
        self._transport: paramiko.Transport | None = None
        self._preferences: dict[str, tuple[str, ...]] = {}
        self._last_error: tuple[int, str] = (0, "")
        self._blocking = True
        self.timeout: float | None = None
        self._keepalive_interval = 0
        self._keepalive_want_reply = False
        self._keepalive_sent_at = 0.0

    # -- error bookkeeping -------------------------------------------------

    def last_error(self) -> tuple[int, str]:
        return self._last_error

    def _fail(self, code: int, message: str) -> int:
        self._last_error = (int(code), message)
        return int(code)

    def _fail_from(self, exc: BaseException, failure: int | None = None) -> int:
        code = error_code_for(exc)
        if failure is not None and code in (SshErrorKind.PROTO, SshErrorKind.UNKNOWN):
            code = failure
        return self._fail(code, str(exc) or type(exc).__name__)

    def _call(self, func: Callable[[], object], *, failure: int | None = None) -> int:
        try:
            func()
        except Exception as exc:
            return self._fail_from(exc, failure)
        return 0

    def _require_transport(self) -> paramiko.Transport:
        if self._transport is None or not self._transport.is_active():
            raise _EngineFailure(SshErrorKind.SOCKET_DISCONNECT, "Transport is not active")
        return self._transport

    # -- transport ---------------------------------------------------------

    def method_pref(self, method: int, prefs: str) -> int:
        try:
            slot = _PREFERENCE_SLOTS.get(SshMethod(method))
        except ValueError:
            slot = None
        if slot is None:
            return self._fail(SshErrorKind.METHOD_NOT_SUPPORTED, f"Method {method} cannot be configured")
        attribute, supported = slot
        names = tuple(name for name in (p.strip() for p in prefs.split(",")) if name in supported)
        if not names:
            return self._fail(SshErrorKind.METHOD_NOT_SUPPORTED, f"No supported algorithm in {prefs!r}")
        self._preferences[attribute] = names
        return 0

    def handshake(self, sock: socket.socket, timeout: float | None) -> int:
        def start() -> None:
            transport = paramiko.Transport(sock)
            self._transport = transport
            options = transport.get_security_options()
            for attribute, names in self._preferences.items():
                setattr(options, attribute, names)
            if timeout is not None:
                transport.banner_timeout = timeout
                transport.handshake_timeout = timeout
            transport.start_client(timeout=timeout)

        return self._call(start, failure=SshErrorKind.KEX_FAILURE)

    def set_blocking(self, blocking: bool) -> None:
        self._blocking = blocking

    def set_timeout(self, seconds: float | None) -> None:
        self.timeout = seconds

    def keepalive_config(self, want_reply: bool, interval_seconds: int) -> None:
        self._keepalive_want_reply = want_reply
        self._keepalive_interval = interval_seconds
        if self._transport is not None and not want_reply:
            self._transport.set_keepalive(interval_seconds)

    def keepalive_send(self) -> tuple[int, int]:
        if self._keepalive_interval <= 0:
            return 0, 0
        elapsed = time.monotonic() - self._keepalive_sent_at
        if elapsed < self._keepalive_interval:
            return 0, int(self._keepalive_interval - elapsed)

        def send() -> None:
            self._require_transport().global_request("keepalive@openssh.com", wait=self._keepalive_want_reply)

        rc = self._call(send)
        if rc < 0:
            return rc, 0
        self._keepalive_sent_at = time.monotonic()
        return 0, self._keepalive_interval

    def trace(self, bitmask: int) -> int:
        level = logging.DEBUG if TraceLevel(bitmask) else logging.WARNING
        logging.getLogger("paramiko").setLevel(level)
        return 0

    def hostkey(self) -> tuple[bytes, int] | None:
        try:
            key = self._require_transport().get_remote_server_key()
        except Exception as exc:
            self._fail_from(exc)
            return None
        return key.asbytes(), SshHostKeyType.from_key_name(key.get_name())

    def hostkey_hash(self, hash_type: int) -> bytes | None:
        result = self.hostkey()
        if result is None:
            return None
        name = _HASH_NAMES.get(SshHashType(hash_type))
        return hashlib.new(name, result[0], usedforsecurity=False).digest()

    def methods(self, method: int) -> str | None:
        try:
            transport = self._require_transport()
        except _EngineFailure as exc:
            self._fail_from(exc)
            return None
        method = SshMethod(method)
        if method is SshMethod.KEX:
            engine_type = type(transport.kex_engine)
            return next((name for name, kex in transport._kex_info.items() if kex is engine_type), None)
        if method in (SshMethod.LANG_CS, SshMethod.LANG_SC):
            return ""
        attribute = _NEGOTIATED_ATTRIBUTES.get(method)
        value = getattr(transport, attribute, None) if attribute else None
        if value is None:
            self._fail(SshErrorKind.METHOD_NOT_SUPPORTED, f"{method.name} is not reported by paramiko")
        return value

    def disconnect(self, description: str) -> int:
        def send() -> None:
            transport = self._transport
            if transport is None or not transport.is_active():
                return
            m = Message()
            m.add_byte(cMSG_DISCONNECT)
            m.add_int(_DISCONNECT_BY_APPLICATION)
            m.add_string(description)
            m.add_string("")
            transport._send_user_message(m)

        return self._call(send)

    def free(self) -> int:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        return 0

    # -- channels ----------------------------------------------------------

    def _open_session(self, window_size: int | None = None, packet_size: int | None = None) -> paramiko.Channel:
        chan = self._require_transport().open_session(
            window_size=window_size,
            max_packet_size=packet_size,
            timeout=self.timeout,
        )
        chan.settimeout(self.timeout)
        return chan

    def channel_open(self, channel_type: str, window_size: int, packet_size: int) -> ParamikoChannel | None:
        if channel_type != "session":
            self._fail(SshErrorKind.CHANNEL_UNKNOWN, f"Unsupported channel type {channel_type!r}")
            return None
        try:
            return ParamikoChannel(self._open_session(window_size, packet_size), self)
        except Exception as exc:
            self._fail_from(exc, SshErrorKind.CHANNEL_FAILURE)
            return None

    def scp_send(self, path: str, mode: int, size: int) -> ParamikoChannel | None:
        chan: paramiko.Channel | None = None
        try:
            chan = self._open_session()
            chan.exec_command(f"scp -t {shlex.quote(path)}")
            _read_ack(chan)
            name = posixpath.basename(path.rstrip("/")) or "file"
            chan.sendall(f"C{mode & 0o7777:04o} {size} {name}\n".encode("utf-8"))
            _read_ack(chan)
        except Exception as exc:
            if chan is not None:
                chan.close()
            self._fail_from(exc, SshErrorKind.SCP_PROTOCOL)
            return None
        return ParamikoScpSendChannel(chan, self)

    def scp_recv(self, path: str) -> tuple[ParamikoChannel, ScpStat] | None:
        chan: paramiko.Channel | None = None
        try:
            chan = self._open_session()
            chan.exec_command(f"scp -f {shlex.quote(path)}")
            chan.sendall(b"\x00")
            while True:
                line = _read_line(chan)
                if not line:
                    raise ScpProtocolError("unexpected end of SCP stream")
                if line[:1] in (b"\x01", b"\x02"):
                    raise ScpProtocolError(line[1:].decode("utf-8", errors="replace").strip())
                if line[:1] == b"T":
                    chan.sendall(b"\x00")
                    continue
                if line[:1] == b"C":
                    break
                raise ScpProtocolError(f"unexpected SCP header: {line!r}")
            try:
                mode_text, size_text, _name = line[1:].decode("utf-8").rstrip("\n").split(" ", 2)
                stat = ScpStat(file_size=int(size_text), mode=int(mode_text, 8))
            except ValueError as exc:
                raise ScpProtocolError(f"malformed SCP header: {line!r}") from exc
            chan.sendall(b"\x00")
        except Exception as exc:
            if chan is not None:
                chan.close()
            self._fail_from(exc, SshErrorKind.SCP_PROTOCOL)
            return None
        return ParamikoScpReceiveChannel(chan, self, stat.file_size), stat

    # -- authentication ----------------------------------------------------

    def _authenticate(self, attempt: Callable[[paramiko.Transport], object], rejected: SshErrorKind) -> int:
        try:
            transport = self._require_transport()
            attempt(transport)
        except paramiko.PasswordRequiredException as exc:
            return self._fail(SshErrorKind.FILE, str(exc) or "Private key is encrypted")
        except paramiko.AuthenticationException as exc:
            return self._fail(rejected, str(exc) or "Authentication failed")
        except Exception as exc:
            if self._transport is not None and not self._transport.is_active():
                return self._fail(SshErrorKind.SOCKET_DISCONNECT, str(exc) or "Transport closed")
            return self._fail_from(exc)
        if not transport.is_authenticated():
            return self._fail(rejected, "Further authentication required")
        return 0

    def userauth_password(self, username: str, password: str) -> int:
        return self._authenticate(
            lambda transport: transport.auth_password(username, password, fallback=False),
            SshErrorKind.AUTHENTICATION_FAILED,
        )

    def userauth_publickey_fromfile(
        self,
        username: str,
        public_key_path: str | None,
        private_key_path: str,
        passphrase: str | None,
    ) -> int:
        def attempt(transport: paramiko.Transport) -> None:
            text = _read_key_file(private_key_path)
            key = _load_private_key(lambda: io.StringIO(text), passphrase)
            if public_key_path and public_key_path.endswith("-cert.pub"):
                key.load_certificate(os.path.expanduser(public_key_path))
            transport.auth_publickey(username, key)

        return self._authenticate(attempt, SshErrorKind.PUBLICKEY_UNVERIFIED)

    def userauth_publickey_frommemory(
        self,
        username: str,
        public_key: bytes,
        private_key: bytes,
        passphrase: str | None,
    ) -> int:
        def attempt(transport: paramiko.Transport) -> None:
            text = private_key.decode("utf-8")
            key = _load_private_key(lambda: io.StringIO(text), passphrase)
            transport.auth_publickey(username, key)

        return self._authenticate(attempt, SshErrorKind.PUBLICKEY_UNVERIFIED)

    def userauth_hostbased_fromfile(
        self,
        username: str,
        public_key_path: str,
        private_key_path: str,
        passphrase: str | None,
        hostname: str,
        local_username: str,
    ) -> int:
        return self._fail(SshErrorKind.METHOD_NOT_SUPPORTED, "paramiko does not implement host-based authentication")

    def agent_init(self) -> ParamikoAgent | None:
        return ParamikoAgent(self)


class ParamikoBackend:
    name = "paramiko"

    def init(self) -> int:
        return 0

    def create_session(self) -> ParamikoSession | None:
        return ParamikoSession()
