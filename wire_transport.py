# -*- coding: utf-8 -*-
"""
wire_transport.py: Byte-stream framing for the myftp protocol.

Every frame that crosses the connection is built from a handful of
primitives on `SessionTransport`:

- exact-count send/receive, looping over partial socket I/O,
- newline-terminated text lines,
- a fixed-width length field (8-byte unsigned, little-endian).

On top of those, blobs are a length field followed by exactly that many raw
bytes. Blobs carry command output, directory listings and file contents in
both directions.
"""
import logging
import socket
import struct
from dataclasses import dataclass
from typing import BinaryIO, Union

LENGTH_FIELD = struct.Struct('<Q') # Fixed 64-bit little-endian length prefix
LINE_MAXLEN = 4096
CHUNK_SIZE = 65536
LINE_ENCODING = 'utf-8'

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The connection failed while a frame was being sent or received."""


class ConnectionClosed(TransportError):
    """The peer shut the connection down before the frame was complete."""


class IncompleteTransfer(ConnectionClosed):
    """A blob ended before its declared length was delivered."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Blob ended after {received} of {expected} bytes.")
        self.expected = expected
        self.received = received


class SinkWriteError(Exception):
    """The local file refused a chunk while a blob was being received."""

    def __init__(self, expected: int, consumed: int):
        super().__init__(f"Local write failed after {consumed} of {expected} bytes were read.")
        self.expected = expected
        self.consumed = consumed


@dataclass
class Line:
    text: str
    truncated: bool = False


@dataclass
class Blob:
    data: bytes


Frame = Union[Line, Blob]


class SessionTransport:
    """
    Frame-level access to one connected stream socket.

    All partial-I/O handling lives here: interrupted calls are retried,
    short writes and reads are accumulated, and an orderly shutdown by the
    peer is reported as `ConnectionClosed` rather than a generic error.
    """
    def __init__(self, conn: socket.socket, line_maxlen: int = LINE_MAXLEN, chunk_size: int = CHUNK_SIZE):
        """
        Args:
            conn: A connected stream socket in blocking mode.
            line_maxlen: Bound on a received line, counting a terminator slot,
                so at most `line_maxlen - 1` bytes of text are kept.
            chunk_size: Largest single read/write used while streaming blobs.
        """
        if line_maxlen < 2:
            raise ValueError("line_maxlen must be at least 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.conn = conn
        self.line_maxlen = line_maxlen
        self.chunk_size = chunk_size

    def _send(self, data) -> int:
        while True:
            try:
                return self.conn.send(data)
            except InterruptedError:
                continue
            except OSError as e:
                raise TransportError(f"send failed: {e}") from e

    def _recv(self, size: int) -> bytes:
        while True:
            try:
                return self.conn.recv(size)
            except InterruptedError:
                continue
            except OSError as e:
                raise TransportError(f"recv failed: {e}") from e

    def send_exact(self, data: bytes) -> int:
        """
        Sends all of `data`, accumulating partial writes.

        Returns:
            The number of bytes sent. This is short of `len(data)` only if
            the socket accepted zero bytes, which the caller must check.
        """
        view = memoryview(data)
        sent = 0
        while sent < len(view):
            n = self._send(view[sent:])
            if n == 0:
                break
            sent += n
        return sent

    def recv_exact(self, n: int) -> bytes:
        """Receives exactly `n` bytes or raises `ConnectionClosed`."""
        buf = bytearray()
        while len(buf) < n:
            chunk = self._recv(n - len(buf))
            if not chunk:
                raise ConnectionClosed(f"peer closed after {len(buf)} of {n} bytes")
            buf.extend(chunk)
        return bytes(buf)

    def recv_line(self) -> Line:
        """
        Reads one byte at a time up to the next newline.

        The newline is never part of the result. Bytes past the line bound
        are consumed so the next frame starts in the right place, but they
        are dropped and the returned `Line` is marked as truncated.
        """
        buf = bytearray()
        truncated = False
        keep = self.line_maxlen - 1
        while True:
            c = self._recv(1)
            if not c:
                raise ConnectionClosed("peer closed while a line was being read")
            if c == b'\n':
                break
            if len(buf) < keep:
                buf.extend(c)
            else:
                truncated = True
        if truncated:
            logger.warning("Received line exceeded the line bound and was truncated.", extra={'line_maxlen': self.line_maxlen})
        return Line(buf.decode(LINE_ENCODING, errors='replace'), truncated)

    def send_line(self, text: str):
        """Sends `text` followed by a newline. `text` must not contain one."""
        if '\n' in text:
            raise ValueError("line text must not contain a newline")
        payload = text.encode(LINE_ENCODING) + b'\n'
        if self.send_exact(payload) != len(payload):
            raise ConnectionClosed("peer stopped accepting data while a line was being sent")

    def send_u64(self, value: int):
        payload = LENGTH_FIELD.pack(value)
        if self.send_exact(payload) != len(payload):
            raise ConnectionClosed("peer stopped accepting data while a length field was being sent")

    def recv_u64(self) -> int:
        return LENGTH_FIELD.unpack(self.recv_exact(LENGTH_FIELD.size))[0]

    # --- Transfer encoding ---

    def send_blob(self, data: bytes):
        """Sends a length field followed by `data`."""
        self.send_u64(len(data))
        if data and self.send_exact(data) != len(data):
            raise IncompleteTransfer(len(data), 0)

    def send_blob_from(self, source: BinaryIO, size: int) -> int:
        """
        Streams `size` bytes from an open binary file as one blob.

        The length field is sent first. If the file turns out to be shorter
        than `size` the stream can no longer be framed correctly, so the
        shortfall is raised as `IncompleteTransfer`.
        """
        self.send_u64(size)
        sent = 0
        while sent < size:
            chunk = source.read(min(self.chunk_size, size - sent))
            if not chunk:
                break
            n = self.send_exact(chunk)
            sent += n
            if n != len(chunk):
                break
        if sent != size:
            raise IncompleteTransfer(size, sent)
        return sent

    def recv_blob_into(self, sink: BinaryIO, expected_len: int) -> int:
        """
        Copies exactly `expected_len` bytes from the stream into `sink`.

        Data is written chunk by chunk as it arrives. If the peer goes away
        early, whatever was already written stays in `sink` and
        `IncompleteTransfer` reports how far the copy got.
        A failing `sink` raises `SinkWriteError` with the number of bytes
        already taken off the stream, so the caller can discard the rest.
        """
        received = 0
        while received < expected_len:
            try:
                chunk = self._recv(min(self.chunk_size, expected_len - received))
            except TransportError as e:
                raise IncompleteTransfer(expected_len, received) from e
            if not chunk:
                raise IncompleteTransfer(expected_len, received)
            received += len(chunk)
            try:
                sink.write(chunk)
            except OSError as e:
                raise SinkWriteError(expected_len, received) from e
        return received

    def recv_blob(self) -> bytes:
        """Reads a length field and then that many bytes."""
        size = self.recv_u64()
        buf = bytearray()
        while len(buf) < size:
            chunk = self._recv(min(self.chunk_size, size - len(buf)))
            if not chunk:
                raise IncompleteTransfer(size, len(buf))
            buf.extend(chunk)
        return bytes(buf)

    def discard(self, n: int) -> int:
        """Reads and throws away exactly `n` bytes, keeping the framing aligned."""
        remaining = n
        while remaining > 0:
            chunk = self._recv(min(self.chunk_size, remaining))
            if not chunk:
                raise IncompleteTransfer(n, n - remaining)
            remaining -= len(chunk)
        return n

    # --- Frames ---

    def write_frame(self, frame: Frame):
        if isinstance(frame, Line):
            self.send_line(frame.text)
        elif isinstance(frame, Blob):
            self.send_blob(frame.data)
        else:
            raise TypeError(f"not a frame: {frame!r}")

    def read_frame(self, kind: type) -> Frame:
        """
        Reads the next frame, which must be of type `kind`.

        Framing is positional, so the caller always knows what comes next.
        """
        if kind is Line:
            return self.recv_line()
        if kind is Blob:
            return Blob(self.recv_blob())
        raise TypeError(f"not a frame type: {kind!r}")

    def close(self):
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass # Peer may have gone already
        self.conn.close()
