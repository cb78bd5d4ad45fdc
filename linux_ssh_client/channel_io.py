"""Channel ownership and byte transfer between channels and local streams.

Every transfer loop checks its ``CancellationToken`` once per iteration. The
check cannot interrupt a read or write that is already blocked inside the
engine; cancellation takes effect at the next loop boundary.
"""
from __future__ import annotations

import io
import threading
from typing import BinaryIO

from linux_ssh_client.engine import EngineChannel, EngineSession
from linux_ssh_client.exceptions import OperationCancelledError, SshUsageError, raise_if_failed
from linux_ssh_client.types import TEXT_READ_BUFFER_SIZE

STDOUT_STREAM_ID = 0
STDERR_STREAM_ID = 1


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()


def _check_cancelled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


class ChannelHandle:
    """Exclusive owner of one engine channel.

    The engine channel is released exactly once, by ``free()`` or by leaving
    the ``with`` block. Request methods raise ``SshException`` on failure;
    ``read``/``write`` return the raw engine result for the transfer loops.
    """

    def __init__(self, channel: EngineChannel, engine: EngineSession) -> None:
        self._channel: EngineChannel | None = channel
        self._engine = engine
        self._closed = False

    def __enter__(self) -> ChannelHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    @property
    def freed(self) -> bool:
        return self._channel is None

    @property
    def closed(self) -> bool:
        return self._closed

    def _require(self) -> EngineChannel:
        if self._channel is None:
            raise SshUsageError("Channel has already been freed")
        return self._channel

    def request_pty(
        self,
        term: str,
        modes: bytes,
        width: int,
        height: int,
        width_pixels: int,
        height_pixels: int,
    ) -> None:
        channel = self._require()
        rc = channel.request_pty(term, modes, width, height, width_pixels, height_pixels)
        raise_if_failed(rc, self._engine, "Failed to request PTY", cleanup=self.close_quietly)

    def process_startup(self, request: str, message: str) -> None:
        channel = self._require()
        rc = channel.process_startup(request, message)
        raise_if_failed(rc, self._engine, f"Failed to start {request!r} request", cleanup=self.close_quietly)

    def read(self, stream_id: int, buffer: memoryview) -> int:
        return self._require().read_ex(stream_id, buffer)

    def write(self, stream_id: int, data: memoryview) -> int:
        return self._require().write_ex(stream_id, data)

    def send_eof(self) -> None:
        raise_if_failed(self._require().send_eof(), self._engine, "Failed to send EOF")

    def wait_eof(self) -> None:
        raise_if_failed(self._require().wait_eof(), self._engine, "Failed to wait for EOF")

    def close(self) -> None:
        channel = self._require()
        if self._closed:
            return
        self._closed = True
        raise_if_failed(channel.close(), self._engine, "Failed to close channel")

    def wait_closed(self) -> None:
        raise_if_failed(self._require().wait_closed(), self._engine, "Failed to wait for channel close")

    def exit_status(self) -> int | None:
        return self._require().get_exit_status()

    def exit_signal(self) -> str | None:
        return self._require().get_exit_signal()

    def free(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.free()

    def close_quietly(self) -> None:
        if self._channel is not None and not self._closed:
            self._closed = True
            self._channel.close()


def copy_to_stream(
    channel: ChannelHandle,
    stream_id: int,
    destination: BinaryIO,
    *,
    buffer_size: int,
    expected_size: int | None = None,
    cancel_token: CancellationToken | None = None,
) -> int:
    """Copy channel data into ``destination``.

    With ``expected_size`` the copy stops exactly at that many bytes, truncating
    the final chunk if the engine returned more. Without it, the copy runs
    until the engine reports no more data. A zero or negative read ends the
    copy either way.

    Returns:
        number of bytes written to ``destination``
    """
    if buffer_size <= 0:
        raise SshUsageError(f"buffer_size must be positive, got {buffer_size}")
    buffer = bytearray(buffer_size)
    view = memoryview(buffer)
    total = 0
    while expected_size is None or total < expected_size:
        _check_cancelled(cancel_token)
        read = channel.read(stream_id, view)
        if read <= 0:
            break
        if expected_size is not None:
            read = min(read, expected_size - total)
        destination.write(view[:read])
        total += read
    return total


def read_to_text(
    channel: ChannelHandle,
    stream_id: int,
    *,
    cancel_token: CancellationToken | None = None,
    encoding: str = "utf-8",
) -> str:
    sink = io.BytesIO()
    copy_to_stream(channel, stream_id, sink, buffer_size=TEXT_READ_BUFFER_SIZE, cancel_token=cancel_token)
    return sink.getvalue().decode(encoding, errors="replace")


def copy_to_channel(
    source: BinaryIO,
    channel: ChannelHandle,
    stream_id: int,
    bytes_to_write: int,
    *,
    buffer_size: int,
    cancel_token: CancellationToken | None = None,
) -> int:
    """Copy up to ``bytes_to_write`` bytes from ``source`` into the channel.

    Partial writes are retried with the unwritten remainder. A write that makes
    no progress (zero or negative) aborts the transfer and reports zero bytes.

    Returns:
        number of bytes accepted by the channel
    """
    if buffer_size <= 0:
        raise SshUsageError(f"buffer_size must be positive, got {buffer_size}")
    total = 0
    while total < bytes_to_write:
        _check_cancelled(cancel_token)
        chunk = source.read(min(buffer_size, bytes_to_write - total))
        if not chunk:
            break
        pending = memoryview(chunk)
        while pending:
            written = channel.write(stream_id, pending)
            if written <= 0:
                return 0
            pending = pending[written:]
            total += written
    return total


class ChannelStream(io.RawIOBase):
    """Read-only, non-seekable view of one stream of an open channel.

    The stream does not own the channel; closing it only stops further reads.
    """

    def __init__(
        self,
        channel: ChannelHandle,
        stream_id: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        super().__init__()
        self._channel = channel
        self._stream_id = stream_id
        self._cancel_token = cancel_token
        self._eof = False

    @property
    def stream_id(self) -> int:
        return self._stream_id

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def writable(self) -> bool:
        return False

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream")
        if self._eof or len(buffer) == 0:
            return 0
        _check_cancelled(self._cancel_token)
        view = memoryview(buffer).cast("B")
        read = self._channel.read(self._stream_id, view)
        if read <= 0:
            self._eof = True
            return 0
        return read
