"""SSH session state machine.

A session moves through ``DISCONNECTED -> CONNECTED -> LOGGED_IN`` and ends in
``DISPOSED``, which is terminal and reachable from every state. Each operation
checks the status it needs before any engine call and raises
``SshUsageError`` otherwise.

Typical use:
    >>> with SshSession() as session:
    ...     session.connect("example.com", 22)
    ...     session.authenticate(PasswordCredential("user", "secret"))
    ...     result = session.execute_command("uname -a")

A session is not safe for concurrent use. Only ``connect`` is guarded by a
lock; command and transfer calls on one session must be serialized by the
caller.
"""
from __future__ import annotations

import asyncio
import io
import socket
import threading
import weakref
from collections.abc import Callable
from typing import Any, BinaryIO, TypeVar

from linux_ssh_client.channel_io import (
    STDERR_STREAM_ID,
    STDOUT_STREAM_ID,
    CancellationToken,
    ChannelHandle,
    ChannelStream,
    copy_to_channel,
    copy_to_stream,
    read_to_text,
)
from linux_ssh_client.credentials import SshCredential
from linux_ssh_client.engine import EngineBackend, EngineSession, ensure_engine_initialized
from linux_ssh_client.exceptions import (
    SshErrorKind,
    SshException,
    SshUsageError,
    error_from_engine,
    raise_if_failed,
    wrap_exception,
)
from linux_ssh_client.logger import get_logger
from linux_ssh_client.paramiko_engine import ParamikoBackend
from linux_ssh_client.settings import SSHClientSettings
from linux_ssh_client.types import (
    CommandExecutionOptions,
    CommandResult,
    HostKey,
    SshConnectionStatus,
    SshHashType,
    SshHostKeyType,
    SshMethod,
    TraceLevel,
)

T = TypeVar("T")

Status = SshConnectionStatus

SECURE_METHOD_PREFERENCES: dict[SshMethod, str] = {
    SshMethod.KEX: (
        "curve25519-sha256,curve25519-sha256@libssh.org,"
        "ecdh-sha2-nistp521,ecdh-sha2-nistp384,ecdh-sha2-nistp256,"
        "diffie-hellman-group-exchange-sha256,"
        "diffie-hellman-group16-sha512,diffie-hellman-group18-sha512,"
        "diffie-hellman-group14-sha256"
    ),
    SshMethod.HOSTKEY: (
        "ssh-ed25519,ecdsa-sha2-nistp521,ecdsa-sha2-nistp384,"
        "ecdsa-sha2-nistp256,rsa-sha2-512,rsa-sha2-256"
    ),
    SshMethod.CRYPT_CS: (
        "chacha20-poly1305@openssh.com,aes256-gcm@openssh.com,"
        "aes128-gcm@openssh.com,aes256-ctr,aes192-ctr,aes128-ctr"
    ),
    SshMethod.CRYPT_SC: (
        "chacha20-poly1305@openssh.com,aes256-gcm@openssh.com,"
        "aes128-gcm@openssh.com,aes256-ctr,aes192-ctr,aes128-ctr"
    ),
    SshMethod.MAC_CS: (
        "hmac-sha2-256-etm@openssh.com,hmac-sha2-512-etm@openssh.com,"
        "hmac-sha2-256,hmac-sha2-512"
    ),
    SshMethod.MAC_SC: (
        "hmac-sha2-256-etm@openssh.com,hmac-sha2-512-etm@openssh.com,"
        "hmac-sha2-256,hmac-sha2-512"
    ),
    SshMethod.COMP_CS: "none",
    SshMethod.COMP_SC: "none",
}


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # the peer may already have closed the connection
        pass
    sock.close()


def _preview(command: str, limit: int = 80) -> str:
    return command if len(command) <= limit else command[:limit] + "..."


class CommandStream:
    """A running command whose output is read incrementally.

    Read ``stdout`` and ``stderr`` to EOF, then call ``wait_for_exit`` once to
    collect the exit status. The channel stays open until ``close``.
    """

    def __init__(self, channel: ChannelHandle, *, cancel_token: CancellationToken | None = None) -> None:
        self._channel = channel
        self.stdout = ChannelStream(channel, STDOUT_STREAM_ID, cancel_token=cancel_token)
        self.stderr = ChannelStream(channel, STDERR_STREAM_ID, cancel_token=cancel_token)
        self._result: CommandResult | None = None

    def __enter__(self) -> CommandStream:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._channel.freed

    def wait_for_exit(self) -> CommandResult:
        if self._channel.freed:
            raise SshUsageError("Command stream is closed")
        if self._result is not None:
            raise SshUsageError("wait_for_exit can only be called once")
        self._channel.close()
        self._channel.wait_closed()
        self._result = CommandResult(
            successful=True,
            exit_code=self._channel.exit_status(),
            exit_signal=self._channel.exit_signal(),
        )
        return self._result

    def close(self) -> None:
        if self._channel.freed:
            return
        try:
            self._channel.close_quietly()
        finally:
            self.stdout.close()
            self.stderr.close()
            self._channel.free()


class SshSession:
    """One SSH connection: a TCP socket plus the engine session driving it.

    Args:
        backend: engine implementation, defaults to ``ParamikoBackend``
        settings: defaults for timeouts, buffers and algorithm hardening
        logger: loguru-compatible logger; the package logger is used if omitted
    """

    def __init__(
        self,
        *,
        backend: EngineBackend | None = None,
        settings: SSHClientSettings | None = None,
        logger: Any | None = None,
    ) -> None:
        self._backend = backend or ParamikoBackend()
        self._settings = settings or SSHClientSettings()
        self._log = logger if logger is not None else get_logger(component="ssh_session")
        self._status = Status.DISCONNECTED
        self._engine: EngineSession | None = None
        self._socket: socket.socket | None = None
        self._method_preferences: dict[SshMethod, str] = {}
        self._session_timeout: float | None = self._settings.session_timeout_seconds or None
        self._trace = TraceLevel.NONE
        self._connect_lock = threading.Lock()
        self._streams: weakref.WeakSet[CommandStream] = weakref.WeakSet()
        if self._settings.use_secure_method_preferences:
            self.set_secure_method_preferences()

    def __enter__(self) -> SshSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def status(self) -> SshConnectionStatus:
        return self._status

    def _require_status(self, operation: str, *allowed: SshConnectionStatus) -> EngineSession | None:
        if self._status not in allowed:
            expected = " or ".join(s.name for s in allowed)
            raise SshUsageError(
                f"{operation} requires status {expected}, current status is {self._status.name}",
                details={"operation": operation, "status": self._status.name},
            )
        return self._engine

    def _require_engine(self, operation: str, *allowed: SshConnectionStatus) -> EngineSession:
        engine = self._require_status(operation, *allowed)
        assert engine is not None
        return engine

    # -- configuration before connect -------------------------------------

    def set_method_preferences(self, method: SshMethod, preferences: str) -> None:
        self._require_status("set_method_preferences", Status.DISCONNECTED)
        try:
            method = SshMethod(method)
        except ValueError as exc:
            raise SshUsageError(f"Unknown method: {method!r}") from exc
        if not isinstance(preferences, str) or not preferences.strip():
            raise SshUsageError(f"Preferences for {method.name} must not be empty")
        self._method_preferences[method] = preferences.strip()

    def set_secure_method_preferences(self) -> None:
        for method, preferences in SECURE_METHOD_PREFERENCES.items():
            self.set_method_preferences(method, preferences)

    def set_session_timeout(self, seconds: float) -> None:
        if self._status is Status.DISPOSED:
            raise SshUsageError("Session is disposed")
        if seconds <= 0:
            raise SshUsageError(f"Session timeout must be positive, got {seconds}")
        self._session_timeout = seconds
        if self._engine is not None:
            self._engine.set_timeout(seconds)

    def disable_session_timeout(self) -> None:
        if self._status is Status.DISPOSED:
            raise SshUsageError("Session is disposed")
        self._session_timeout = None
        if self._engine is not None:
            self._engine.set_timeout(None)

    def set_trace(self, levels: TraceLevel) -> None:
        if self._status is Status.DISPOSED:
            raise SshUsageError("Session is disposed")
        self._trace = TraceLevel(levels)
        if self._engine is not None:
            self._engine.trace(int(self._trace))

    # -- lifecycle ---------------------------------------------------------

    def connect(self, host: str, port: int = 22, timeout: float | None = None) -> None:
        """Open the TCP connection and perform the SSH handshake.

        Args:
            host: remote host name or address
            port: remote port
            timeout: seconds for TCP connect and handshake; ``None`` uses the
                configured default, which may wait forever

        Raises:
            SshUsageError: bad timeout or session not ``DISCONNECTED``
            SshException: socket failure (``WRAPPED_EXCEPTION``) or handshake failure
        """
        if timeout is None:
            timeout = self._settings.connect_timeout_seconds
        if timeout is not None and timeout <= 0:
            raise SshUsageError(f"Timeout must be positive, got {timeout}")
        self._require_status("connect", Status.DISCONNECTED)
        ensure_engine_initialized(self._backend)

        with self._connect_lock:
            self._require_status("connect", Status.DISCONNECTED)
            self._log = self._log.bind(host=host, port=port)
            self._log.debug(f"SSH: connecting to {host}:{port}")

            engine = self._backend.create_session()
            if engine is None:
                raise SshException("Failed to initialize SSH session", SshErrorKind.FAILED_TO_INITIALIZE_SESSION)

            try:
                sock = socket.create_connection((host, port), timeout=timeout)
            except OSError as exc:
                engine.free()
                self._log.warning(f"SSH: cannot reach {host}:{port}: {exc}")
                raise wrap_exception(f"Failed to connect to {host}:{port}", exc) from exc

            try:
                self._negotiate(engine, sock, timeout)
            except Exception as exc:
                engine.free()
                _close_socket(sock)
                self._log.warning(f"SSH: handshake with {host}:{port} failed: {exc}")
                if isinstance(exc, SshException):
                    raise
                raise wrap_exception("SSH handshake failed", exc) from exc

            self._engine = engine
            self._socket = sock
            self._status = Status.CONNECTED

        self._apply_connection_settings(engine)
        self._log.debug(f"SSH: connected to {host}:{port}")

    def _negotiate(self, engine: EngineSession, sock: socket.socket, timeout: float | None) -> None:
        if self._trace:
            engine.trace(int(self._trace))
        for method in sorted(self._method_preferences):
            rc = engine.method_pref(method, self._method_preferences[method])
            raise_if_failed(rc, engine, f"Failed to set {method.name} preferences")
        raise_if_failed(engine.handshake(sock, timeout), engine, "SSH handshake failed")
        engine.set_blocking(True)

    def _apply_connection_settings(self, engine: EngineSession) -> None:
        if self._session_timeout is not None:
            engine.set_timeout(self._session_timeout)
        if self._settings.keepalive_interval_seconds > 0:
            engine.keepalive_config(self._settings.keepalive_want_reply, self._settings.keepalive_interval_seconds)

    def authenticate(self, credential: SshCredential) -> bool:
        """Try one credential; ``False`` leaves the session ``CONNECTED`` for another try.

        Raises:
            SshException: only when the transport broke during authentication
        """
        engine = self._require_engine("authenticate", Status.CONNECTED)
        if credential.authenticate(engine):
            self._status = Status.LOGGED_IN
            self._log.debug(f"SSH: authenticated as {credential.username} via {credential.method.value}")
            return True
        self._log.warning(f"SSH: {credential.method.value} authentication rejected for {credential.username}")
        return False

    def close(self) -> None:
        """Disconnect and release the engine session and socket. Safe to call repeatedly."""
        if self._status is Status.DISPOSED:
            return
        for stream in list(self._streams):
            stream.close()
        engine, self._engine = self._engine, None
        sock, self._socket = self._socket, None
        try:
            if engine is not None:
                try:
                    engine.disconnect("Session disposed")
                finally:
                    engine.free()
        finally:
            if sock is not None:
                _close_socket(sock)
            self._status = Status.DISPOSED
            self._log.debug("SSH: session disposed")

    dispose = close

    # -- transport introspection -------------------------------------------

    def get_host_key(self) -> HostKey:
        engine = self._require_engine("get_host_key", Status.CONNECTED, Status.LOGGED_IN)
        result = engine.hostkey()
        if result is None:
            raise error_from_engine(engine, "Failed to get host key", SshErrorKind.UNKNOWN)
        key, key_type = result
        try:
            host_key_type = SshHostKeyType(key_type)
        except ValueError:
            host_key_type = SshHostKeyType.UNKNOWN
        return HostKey(key=bytes(key), type=host_key_type)

    def get_host_key_hash(self, hash_type: SshHashType) -> bytes:
        engine = self._require_engine("get_host_key_hash", Status.CONNECTED, Status.LOGGED_IN)
        try:
            hash_type = SshHashType(hash_type)
        except ValueError as exc:
            raise SshUsageError(f"Unknown hash type: {hash_type!r}") from exc
        digest = engine.hostkey_hash(hash_type)
        if digest is None:
            raise error_from_engine(engine, f"Failed to get {hash_type.name} host key hash", SshErrorKind.UNKNOWN)
        return bytes(digest[: hash_type.digest_size])

    def get_negotiated_method(self, method: SshMethod) -> str:
        engine = self._require_engine("get_negotiated_method", Status.CONNECTED, Status.LOGGED_IN)
        try:
            method = SshMethod(method)
        except ValueError as exc:
            raise SshUsageError(f"Unknown method: {method!r}") from exc
        name = engine.methods(method)
        if name is None:
            raise error_from_engine(engine, f"Failed to get negotiated {method.name} method", SshErrorKind.UNKNOWN)
        return name

    def configure_keepalive(self, want_reply: bool, interval_seconds: int) -> None:
        engine = self._require_engine("configure_keepalive", Status.CONNECTED, Status.LOGGED_IN)
        if interval_seconds < 0:
            raise SshUsageError(f"Keepalive interval must not be negative, got {interval_seconds}")
        engine.keepalive_config(want_reply, interval_seconds)

    def send_keepalive(self) -> int:
        """Send a keepalive if one is due; returns seconds until the next is due."""
        engine = self._require_engine("send_keepalive", Status.CONNECTED, Status.LOGGED_IN)
        rc, seconds_to_next = engine.keepalive_send()
        raise_if_failed(rc, engine, "Failed to send keepalive")
        return seconds_to_next

    # -- commands ----------------------------------------------------------

    def _command_options(self, options: CommandExecutionOptions | None) -> CommandExecutionOptions:
        return options if options is not None else CommandExecutionOptions.from_settings(self._settings)

    def _start_command(self, engine: EngineSession, command: str, options: CommandExecutionOptions) -> ChannelHandle:
        raw = engine.channel_open("session", options.window_size, options.packet_size)
        if raw is None:
            raise error_from_engine(engine, "Failed to open session channel", SshErrorKind.CHANNEL_FAILURE)
        channel = ChannelHandle(raw, engine)
        try:
            if options.request_pty:
                channel.request_pty(
                    options.terminal_type.value,
                    options.terminal_modes,
                    options.terminal_width,
                    options.terminal_height,
                    options.terminal_width_pixels,
                    options.terminal_height_pixels,
                )
            channel.process_startup("exec", command)
        except BaseException:
            channel.free()
            raise
        return channel

    def execute_command(
        self,
        command: str,
        options: CommandExecutionOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommandResult:
        """Run ``command`` and collect its output.

        stdout is read to EOF first, then stderr, both decoded as UTF-8.
        """
        engine = self._require_engine("execute_command", Status.LOGGED_IN)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        options = self._command_options(options)
        self._log.debug(f"SSH.exec: {_preview(command)}")

        with self._start_command(engine, command, options) as channel:
            stdout = read_to_text(channel, STDOUT_STREAM_ID, cancel_token=cancel_token)
            stderr = read_to_text(channel, STDERR_STREAM_ID, cancel_token=cancel_token)
            channel.close()
            channel.wait_closed()
            result = CommandResult(
                successful=True,
                stdout=stdout,
                stderr=stderr,
                exit_code=channel.exit_status(),
                exit_signal=channel.exit_signal(),
            )
        self._log.debug(f"SSH.exec: exit_code={result.exit_code}")
        return result

    def execute_command_streaming(
        self,
        command: str,
        options: CommandExecutionOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommandStream:
        """Start ``command`` and return live stdout/stderr streams.

        The returned ``CommandStream`` owns the channel and must be closed.
        """
        engine = self._require_engine("execute_command_streaming", Status.LOGGED_IN)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        options = self._command_options(options)
        self._log.debug(f"SSH.exec_streaming: {_preview(command)}")
        stream = CommandStream(self._start_command(engine, command, options), cancel_token=cancel_token)
        self._streams.add(stream)
        return stream

    # -- SCP ---------------------------------------------------------------

    def _buffer_size(self, buffer_size: int | None) -> int:
        if buffer_size is None:
            return self._settings.scp_buffer_size
        if buffer_size <= 0:
            raise SshUsageError(f"buffer_size must be positive, got {buffer_size}")
        return buffer_size

    def _finish_transfer(self, channel: ChannelHandle, *, raise_errors: bool) -> None:
        first_error: SshException | None = None
        for step in (channel.send_eof, channel.wait_eof, channel.close, channel.wait_closed):
            try:
                step()
            except SshException as exc:
                if first_error is None:
                    first_error = exc
        if first_error is None:
            return
        if raise_errors:
            raise first_error
        self._log.warning(f"SSH.scp: finalization failed after an incomplete transfer: {first_error}")

    def _transfer(self, channel: ChannelHandle, expected_size: int, copy: Callable[[], int]) -> int:
        with channel:
            try:
                total = copy()
            except BaseException:
                self._finish_transfer(channel, raise_errors=False)
                raise
            # a short copy returns its count; finalization errors are only logged
            self._finish_transfer(channel, raise_errors=total == expected_size)
        return total

    def read_file(
        self,
        path: str,
        destination: BinaryIO,
        buffer_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Download ``path`` into ``destination``.

        Returns:
            True if exactly the remote file size was received
        """
        engine = self._require_engine("read_file", Status.LOGGED_IN)
        buffer_size = self._buffer_size(buffer_size)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        opened = engine.scp_recv(path)
        if opened is None:
            raise error_from_engine(engine, f"Failed to open SCP receive channel for {path!r}", SshErrorKind.SCP_PROTOCOL)
        raw, stat = opened
        channel = ChannelHandle(raw, engine)
        total = self._transfer(
            channel,
            stat.file_size,
            lambda: copy_to_stream(
                channel,
                STDOUT_STREAM_ID,
                destination,
                buffer_size=buffer_size,
                expected_size=stat.file_size,
                cancel_token=cancel_token,
            ),
        )
        self._log.debug(f"SSH.scp: received {total}/{stat.file_size} bytes from {path}")
        return total == stat.file_size

    def write_file(
        self,
        path: str,
        source: BinaryIO,
        mode: int | None = None,
        buffer_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Upload the rest of ``source``, from its current position, to ``path``.

        The source must be readable and seekable because SCP announces the
        file size before the first byte.

        Returns:
            True if exactly the announced size was sent
        """
        engine = self._require_engine("write_file", Status.LOGGED_IN)
        if not source.readable():
            raise SshUsageError("Source stream must be readable")
        if not source.seekable():
            raise SshUsageError("Source stream must be seekable")
        mode = self._settings.default_file_mode if mode is None else mode
        if not 0 <= mode <= 0o7777:
            raise SshUsageError(f"Invalid file mode: {mode:o}")
        buffer_size = self._buffer_size(buffer_size)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        position = source.tell()
        size = source.seek(0, io.SEEK_END) - position
        source.seek(position)

        raw = engine.scp_send(path, mode, size)
        if raw is None:
            raise error_from_engine(engine, f"Failed to open SCP send channel for {path!r}", SshErrorKind.SCP_PROTOCOL)
        channel = ChannelHandle(raw, engine)
        total = self._transfer(
            channel,
            size,
            lambda: copy_to_channel(
                source,
                channel,
                STDOUT_STREAM_ID,
                size,
                buffer_size=buffer_size,
                cancel_token=cancel_token,
            ),
        )
        self._log.debug(f"SSH.scp: sent {total}/{size} bytes to {path}")
        return total == size

    # -- async wrappers ----------------------------------------------------
    # The blocking call runs on a worker thread. Cancelling the awaiting task
    # signals ``cancel_token`` so the worker stops at its next loop boundary.

    async def _run_blocking(
        self,
        func: Callable[..., T],
        *args: Any,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except asyncio.CancelledError:
            if cancel_token is not None:
                cancel_token.cancel()
            raise

    async def connect_async(self, host: str, port: int = 22, timeout: float | None = None) -> None:
        await self._run_blocking(self.connect, host, port, timeout)

    async def authenticate_async(self, credential: SshCredential) -> bool:
        return await self._run_blocking(self.authenticate, credential)

    async def execute_command_async(
        self,
        command: str,
        options: CommandExecutionOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommandResult:
        return await self._run_blocking(self.execute_command, command, options, cancel_token, cancel_token=cancel_token)

    async def execute_command_streaming_async(
        self,
        command: str,
        options: CommandExecutionOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommandStream:
        return await self._run_blocking(
            self.execute_command_streaming, command, options, cancel_token, cancel_token=cancel_token
        )

    async def read_file_async(
        self,
        path: str,
        destination: BinaryIO,
        buffer_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        return await self._run_blocking(
            self.read_file, path, destination, buffer_size, cancel_token, cancel_token=cancel_token
        )

    async def write_file_async(
        self,
        path: str,
        source: BinaryIO,
        mode: int | None = None,
        buffer_size: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        return await self._run_blocking(
            self.write_file, path, source, mode, buffer_size, cancel_token, cancel_token=cancel_token
        )
