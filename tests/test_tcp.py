import queue
import socket
import time

import pytest

from oplogrelay.message import MessageTag, Reply, TMessage
from oplogrelay.tcp import (
    HEADER_LEN,
    MAGIC_NUMBER,
    Packet,
    PacketError,
    PacketType,
    TCPReader,
    TCPWriter,
    decode_header,
)


class _Recorder:
    def __init__(self, reply=42):
        self.reply = reply
        self.messages = queue.Queue()

    def sync(self, message, completion):
        self.messages.put(message)
        return self.reply

    def get_acked(self):
        return self.reply


@pytest.fixture
def reader_factory():
    readers = []

    def make(replayers):
        reader = TCPReader("127.0.0.1:0")
        reader.link(replayers)
        readers.append(reader)
        return reader

    yield make
    for reader in readers:
        reader.close()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_get_ack_packet_wire_form():
    encoded = Packet(PacketType.GET_ACK).encode()
    assert encoded == b"\xca\xfe\x01\x01" + bytes(8)
    assert len(encoded) == HEADER_LEN


def test_write_packet_header_round_trip():
    payload = b"payload-bytes"
    encoded = Packet(PacketType.WRITE, payload).encode()
    header = decode_header(encoded[:HEADER_LEN])
    assert header.type_of == PacketType.WRITE
    assert header.length == len(payload)
    assert header.magic == MAGIC_NUMBER
    assert encoded[HEADER_LEN:] == payload


def test_decode_header_rejects_wrong_length():
    with pytest.raises(PacketError):
        decode_header(bytes(HEADER_LEN - 1))


def test_decode_header_rejects_bad_magic():
    encoded = bytearray(Packet(PacketType.WRITE, b"x").encode())
    encoded[0] = 0x00
    with pytest.raises(PacketError):
        decode_header(bytes(encoded[:HEADER_LEN]))


def test_undefined_type_is_invalid():
    assert not Packet(PacketType.UNDEFINED).valid()
    assert Packet(PacketType.RETURN_ACK).valid()
    with pytest.raises(PacketError):
        decode_header(Packet(PacketType.UNDEFINED).encode())


def test_writer_flags():
    writer = TCPWriter("127.0.0.1:1")
    assert writer.ack_required() is True
    assert writer.parsed_logs_required() is False


def test_send_before_prepare_raises():
    writer = TCPWriter("127.0.0.1:1")
    with pytest.raises(RuntimeError):
        writer.send(TMessage(raw_logs=[b"a"]))


def test_reader_requires_replayers():
    reader = TCPReader("127.0.0.1:0")
    with pytest.raises(ValueError):
        reader.link([])


def test_message_travels_to_reader_and_ack_returns(reader_factory):
    recorder = _Recorder(reply=42)
    reader = reader_factory([recorder])
    writer = TCPWriter(f"127.0.0.1:{reader.port}")
    try:
        assert writer.prepare() is True
        writer.send(TMessage(checksum=7, raw_logs=[b"abc", b"de"]))
        received = recorder.messages.get(timeout=5)
        assert received.raw_logs == [b"abc", b"de"]
        assert received.checksum == 7
        assert received.tag & MessageTag.RESIDENT
        assert _wait_for(lambda: writer.ack == 42)
        assert reader.ack == 42
    finally:
        writer.close()


def test_reader_reshards_by_replayer_count(reader_factory):
    recorders = [_Recorder(), _Recorder()]
    reader = reader_factory(recorders)
    writer = TCPWriter(f"127.0.0.1:{reader.port}")
    try:
        assert writer.prepare()
        writer.send(TMessage(shard=5, raw_logs=[b"entry"]))
        received = recorders[1].messages.get(timeout=5)
        assert received.shard == 1
        assert received.raw_logs == [b"entry"]
        assert recorders[0].messages.empty()
    finally:
        writer.close()


def test_send_to_unreachable_peer_reports_network_failure():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    writer = TCPWriter(f"127.0.0.1:{port}")
    try:
        assert writer.prepare() is True
        assert writer.send(TMessage(raw_logs=[b"a"])) == Reply.NETWORK_OP_FAIL
    finally:
        writer.close()


def test_prepare_rejects_address_without_port():
    writer = TCPWriter("localhost")
    assert writer.prepare() is False