import socket
import struct

import pytest

from openagent.netio import (
    BYTE_LIMIT,
    NetReader,
    NetWriter,
    new_byte_array,
    new_float32_array,
    new_float64_array,
    new_int16_array,
    new_int32_array,
    new_int64_array,
    new_string_list,
)


class _ChunkedSocket:
    """Hands out received data one byte at a time."""

    def __init__(self, data):
        self.data = bytearray(data)

    def recv(self, n):
        if not self.data:
            return b""
        out = bytes(self.data[:1])
        del self.data[:1]
        return out


class _TrickleSink:
    def __init__(self, fail_after=None):
        self.received = bytearray()
        self.timeouts = []
        self.closed = False
        self.fail_after = fail_after

    def settimeout(self, value):
        self.timeouts.append(value)

    def send(self, data):
        if self.fail_after is not None and len(self.received) >= self.fail_after:
            raise BrokenPipeError("peer gone")
        self.received += bytes(data[:1])
        return 1

    def close(self):
        self.closed = True


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def test_byte_array_zeroed():
    assert new_byte_array(4) == bytearray(4)


def test_byte_array_limit():
    assert len(new_byte_array(BYTE_LIMIT)) == BYTE_LIMIT
    with pytest.raises(ValueError, match="ILLEGAL MEMORY SIZE REQUEST"):
        new_byte_array(BYTE_LIMIT + 1)


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        new_byte_array(-1)


def test_string_list_limit():
    assert new_string_list(3) == ["", "", ""]
    with pytest.raises(ValueError):
        new_string_list(10241)


@pytest.mark.parametrize(
    "factory, width",
    [
        (new_int16_array, 2),
        (new_int32_array, 4),
        (new_int64_array, 8),
        (new_float32_array, 4),
        (new_float64_array, 8),
    ],
)
def test_typed_arrays(factory, width):
    values = factory(5)
    assert list(values) == [0] * 5
    with pytest.raises(ValueError):
        factory(BYTE_LIMIT // width + 1)


def test_read_values_over_socket(pair):
    a, b = pair
    a.sendall(b"\x07" + struct.pack(">h", -2) + struct.pack(">i", 256) + struct.pack(">q", -5))
    reader = NetReader(b)
    assert reader.read_byte() == 7
    assert reader.read_short() == -2
    assert reader.read_int() == 256
    assert reader.read_long() == -5


def test_read_bytes_assembles_partial_reads():
    reader = NetReader(_ChunkedSocket(b"abcdef"))
    assert reader.read_bytes(6) == b"abcdef"


def test_read_bytes_eof():
    reader = NetReader(_ChunkedSocket(b"ab"))
    with pytest.raises(EOFError):
        reader.read_bytes(3)


def test_read_int_bytes_limit_ok():
    reader = NetReader(_ChunkedSocket(struct.pack(">i", 3) + b"xyz"))
    assert reader.read_int_bytes_limit(10) == b"xyz"


def test_read_int_bytes_limit_exceeded():
    reader = NetReader(_ChunkedSocket(struct.pack(">i", 10) + b"x" * 10))
    with pytest.raises(ValueError, match="max reached"):
        reader.read_int_bytes_limit(5)


def test_read_int_bytes_limit_negative():
    reader = NetReader(_ChunkedSocket(struct.pack(">i", -1)))
    with pytest.raises(ValueError):
        reader.read_int_bytes_limit(5)


def test_write_then_read_round_trip(pair):
    a, b = pair
    payload = bytes(range(200))
    NetWriter(a).write_bytes(payload, 2.0)
    assert NetReader(b).read_bytes(len(payload)) == payload
    assert a.gettimeout() is None


def test_writer_sends_everything_and_clears_timeout():
    sink = _TrickleSink()
    NetWriter(sink).write_bytes(b"hello", 1.5)
    assert bytes(sink.received) == b"hello"
    assert sink.timeouts[0] == 1.5
    assert sink.timeouts[-1] is None
    assert sink.closed is False


def test_writer_closes_on_error():
    sink = _TrickleSink(fail_after=2)
    with pytest.raises(BrokenPipeError):
        NetWriter(sink).write_bytes(b"hello", 1.0)
    assert sink.closed is True
    assert bytes(sink.received) == b"he"