"""Tunnel messages: batches of raw oplog entries and their wire form."""

from __future__ import annotations

import enum
import functools
import operator
import struct
import zlib
from dataclasses import dataclass, field
from typing import Any

_HEADER = struct.Struct(">IIIII")
_LENGTH = struct.Struct(">I")


class MessageTag(enum.IntFlag):
    """Flags carried in a message's tag."""

    NORMAL = 0x00000000
    RETRANSMISSION = 0x00000001
    PROBE = 0x00000010
    RESIDENT = 0x00000100
    PERSISTENT = 0x00001000
    STORAGE_BACKEND = 0x00010000


class Reply(enum.IntEnum):
    """Reply codes returned by writers and replayers; errors are negative."""

    OK = 0
    ERROR = -1
    NETWORK_OP_FAIL = -2
    NETWORK_TIMEOUT = -3
    RETRANSMISSION = -4
    SERVER_FAULT = -5
    CHECKSUM_INVALID = -6
    COMPRESSOR_NOT_SUPPORTED = -7
    DECOMPRESS_INVALID = -8


class MessageDecodeError(ValueError):
    """Raised when bytes do not form a valid tunnel message."""


@dataclass
class TMessage:
    """A batch of raw oplog entries sent through a tunnel."""

    checksum: int = 0
    tag: int = 0
    shard: int = 0
    compress: int = 0
    raw_logs: list[bytes] = field(default_factory=list)

    def crc32(self) -> int:
        """XOR of the CRC-32 of every raw entry."""
        return functools.reduce(
            operator.xor, (zlib.crc32(log) for log in self.raw_logs), 0
        )

    def to_bytes(self) -> bytes:
        """Encode the message in big-endian wire form."""
        parts = [
            _HEADER.pack(
                self.checksum, self.tag, self.shard, self.compress, len(self.raw_logs)
            )
        ]
        for log in self.raw_logs:
            parts.append(_LENGTH.pack(len(log)))
            parts.append(bytes(log))
        return b"".join(parts)

    def approximate_size(self) -> int:
        """Total size of the raw entries in bytes."""
        return sum(len(log) for log in self.raw_logs)

    def __str__(self) -> str:
        return (
            f"[cksum:{self.checksum}, tag:{self.tag}, shard:{self.shard}, "
            f"compress:{self.compress}, logs_len:{len(self.raw_logs)}]"
        )


@dataclass
class WMessage(TMessage):
    """A tunnel message that also carries the parsed entries."""

    parsed_logs: list[Any] = field(default_factory=list)


def decode_message(buf: bytes) -> TMessage:
    """Decode a big-endian wire message produced by :meth:`TMessage.to_bytes`."""
    buf = bytes(buf)
    if len(buf) < _HEADER.size:
        raise MessageDecodeError("message header is truncated")
    checksum, tag, shard, compress, count = _HEADER.unpack_from(buf)

    remaining = len(buf) - _HEADER.size
    is_probe = bool(tag & MessageTag.PROBE)
    if (remaining != 0) == is_probe:
        raise MessageDecodeError("message decode left bytes are empty")

    offset = _HEADER.size
    logs = []
    for _ in range(count):
        if offset + _LENGTH.size > len(buf):
            raise MessageDecodeError("oplogs in msg offset is invalid")
        (length,) = _LENGTH.unpack_from(buf, offset)
        offset += _LENGTH.size
        if offset + length > len(buf):
            raise MessageDecodeError("oplogs in msg offset is invalid")
        logs.append(buf[offset : offset + length])
        offset += length

    return TMessage(
        checksum=checksum, tag=tag, shard=shard, compress=compress, raw_logs=logs
    )