import io
import socket
import struct
import threading
import pytest
from wire_transport import (
    SessionTransport, Line, Blob, ConnectionClosed, IncompleteTransfer, SinkWriteError, TransportError,
)


@pytest.fixture
def transport_pair():
    a, b = socket.socketpair()
    left = SessionTransport(a, line_maxlen=16, chunk_size=7)
    right = SessionTransport(b, line_maxlen=16, chunk_size=7)
    yield left, right
    for s in (a, b):
        s.close()


def _send_in_background(fn, *args):
    # Large payloads would fill the socket buffer if sent from the reading thread
    thread = threading.Thread(target=fn, args=args, daemon=True)
    thread.start()
    return thread


class FailingSink(io.BytesIO):
    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after

    def write(self, data):
        if self.tell() + len(data) > self.fail_after:
            raise OSError("No space left on device")
        return super().write(data)


class InterruptingSocket:
    """Wraps a socket and raises InterruptedError on every other call."""

    def __init__(self, sock):
        self.sock = sock
        self.calls = 0

    def _maybe_interrupt(self):
        self.calls += 1
        if self.calls % 2 == 1:
            raise InterruptedError()

    def send(self, data):
        self._maybe_interrupt()
        return self.sock.send(data)

    def recv(self, size):
        self._maybe_interrupt()
        return self.sock.recv(size)


def test_line_round_trip_excludes_newline(transport_pair):
    left, right = transport_pair
    left.send_line("pwd")
    left.send_line("cd some dir")
    assert right.recv_line() == Line("pwd")
    assert right.recv_line() == Line("cd some dir")

def test_send_line_rejects_embedded_newline(transport_pair):
    left, _ = transport_pair
    with pytest.raises(ValueError):
        left.send_line("ls\npwd")

def test_long_line_is_truncated_but_framing_survives(transport_pair):
    left, right = transport_pair
    left.conn.sendall(b"x" * 40 + b"\nnext\n")
    line = right.recv_line()
    assert line.text == "x" * 15 # line_maxlen - 1
    assert line.truncated is True
    assert right.recv_line() == Line("next")

def test_recv_line_reports_closed_stream(transport_pair):
    left, right = transport_pair
    left.conn.sendall(b"partial")
    left.conn.shutdown(socket.SHUT_WR)
    with pytest.raises(ConnectionClosed):
        right.recv_line()

def test_u64_is_little_endian_eight_bytes(transport_pair):
    left, right = transport_pair
    left.send_u64(0x0102030405060708)
    raw = right.recv_exact(8)
    assert raw == bytes([8, 7, 6, 5, 4, 3, 2, 1])
    assert struct.unpack('<Q', raw)[0] == 0x0102030405060708

def test_u64_round_trip_of_maximum_value(transport_pair):
    left, right = transport_pair
    left.send_u64(2**64 - 1)
    assert right.recv_u64() == 2**64 - 1

def test_recv_exact_distinguishes_orderly_close(transport_pair):
    left, right = transport_pair
    left.conn.sendall(b"abc")
    left.conn.shutdown(socket.SHUT_WR)
    with pytest.raises(ConnectionClosed):
        right.recv_exact(8)

def test_blob_sizes_around_chunk_boundaries(transport_pair):
    left, right = transport_pair
    for size in (0, 1, 6, 7, 8, 50):
        data = bytes(range(size))
        left.send_blob(data)
        assert right.recv_blob() == data

def test_blob_followed_by_line_keeps_alignment(transport_pair):
    left, right = transport_pair
    left.send_blob(b"line1\nline2\n")
    left.send_line("OK")
    assert right.read_frame(Blob) == Blob(b"line1\nline2\n")
    assert right.read_frame(Line) == Line("OK")

def test_write_frame_dispatches_on_frame_type(transport_pair):
    left, right = transport_pair
    left.write_frame(Line("ERR Unknown command."))
    left.write_frame(Blob(b"\x00\x01"))
    assert right.recv_line().text == "ERR Unknown command."
    assert right.recv_blob() == b"\x00\x01"
    with pytest.raises(TypeError):
        left.write_frame("not a frame")

def test_large_blob_streams_through_file_objects(transport_pair):
    left, right = transport_pair
    data = bytes(i % 251 for i in range(200_000))
    thread = _send_in_background(left.send_blob_from, io.BytesIO(data), len(data))
    size = right.recv_u64()
    sink = io.BytesIO()
    assert right.recv_blob_into(sink, size) == len(data)
    thread.join(timeout=5)
    assert sink.getvalue() == data

def test_partial_blob_is_kept_in_sink(transport_pair):
    left, right = transport_pair
    left.send_u64(100)
    left.conn.sendall(b"z" * 30)
    left.conn.shutdown(socket.SHUT_WR)
    size = right.recv_u64()
    sink = io.BytesIO()
    with pytest.raises(IncompleteTransfer) as excinfo:
        right.recv_blob_into(sink, size)
    assert excinfo.value.expected == 100
    assert excinfo.value.received == 30
    assert sink.getvalue() == b"z" * 30

def test_short_source_file_raises_incomplete_transfer(transport_pair):
    left, right = transport_pair
    with pytest.raises(IncompleteTransfer) as excinfo:
        left.send_blob_from(io.BytesIO(b"abc"), 10)
    assert excinfo.value.received == 3

def test_sink_write_error_reports_consumed_bytes(transport_pair):
    left, right = transport_pair
    left.send_blob(b"a" * 21 + b"tail")
    size = right.recv_u64()
    with pytest.raises(SinkWriteError) as excinfo:
        right.recv_blob_into(FailingSink(fail_after=10), size)
    err = excinfo.value
    assert err.expected == 25
    right.discard(err.expected - err.consumed)
    left.send_line("after")
    assert right.recv_line().text == "after"

def test_discard_drains_exactly_the_requested_bytes(transport_pair):
    left, right = transport_pair
    left.conn.sendall(b"q" * 33 + b"pwd\n")
    assert right.discard(33) == 33
    assert right.recv_line().text == "pwd"

def test_discard_on_closed_stream(transport_pair):
    left, right = transport_pair
    left.conn.sendall(b"q" * 5)
    left.conn.shutdown(socket.SHUT_WR)
    with pytest.raises(IncompleteTransfer):
        right.discard(10)

def test_interrupted_calls_are_retried():
    a, b = socket.socketpair()
    try:
        left = SessionTransport(InterruptingSocket(a))
        right = SessionTransport(InterruptingSocket(b))
        left.send_line("ls")
        left.send_blob(b"payload")
        assert right.recv_line().text == "ls"
        assert right.recv_blob() == b"payload"
    finally:
        a.close()
        b.close()

def test_os_errors_become_transport_errors():
    a, b = socket.socketpair()
    b.close()
    a.close()
    transport = SessionTransport(a)
    with pytest.raises(TransportError):
        transport.recv_line()

def test_constructor_validates_bounds():
    a, b = socket.socketpair()
    try:
        with pytest.raises(ValueError):
            SessionTransport(a, line_maxlen=1)
        with pytest.raises(ValueError):
            SessionTransport(a, chunk_size=0)
    finally:
        a.close()
        b.close()
