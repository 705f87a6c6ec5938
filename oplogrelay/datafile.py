"""Oplog data files: a fixed header followed by blocks of tunnel messages.

Layout::

    | header (32 bytes) | block | block | ...

A block is a 24-byte big-endian header (checksum, tag, shard, compress,
0xeeeeeeee, body length) followed by length-prefixed raw entries.
"""

from __future__ import annotations

import logging
import os
import queue
import struct
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator, Sequence

from .message import MessageTag, Reply, TMessage

_log = logging.getLogger(__name__)

FILE_MAGIC_NUMBER = 0xEEEEEEEEEE201314
FILE_PROTOCOL_NUMBER = 1
FILE_HEADER_SIZE = 32
BLOCK_MAGIC = 0xEEEEEEEE
WRITER_QUEUE_CAPACITY = 8192
FLUSH_INTERVAL = 1.0

_FILE_HEADER = struct.Struct(">QII16s")
_BLOCK_HEADER = struct.Struct(">IIIIII")
_LENGTH = struct.Struct(">I")
_UINT32_MASK = 0xFFFFFFFF

_STOP = object()


class DataFileError(ValueError):
    """Raised when a data file is not a valid oplog data file."""


@dataclass
class FileHeader:
    """The 32-byte header at the start of every data file."""

    magic: int = FILE_MAGIC_NUMBER
    protocol: int = FILE_PROTOCOL_NUMBER
    checksum: int = 0
    reserved: bytes = bytes(16)

    def encode(self) -> bytes:
        return _FILE_HEADER.pack(self.magic, self.protocol, self.checksum, self.reserved)

    @property
    def valid(self) -> bool:
        return self.magic == FILE_MAGIC_NUMBER and self.protocol == FILE_PROTOCOL_NUMBER


def read_header(stream: BinaryIO) -> FileHeader:
    """Read and decode the file header from ``stream``."""
    data = stream.read(FILE_HEADER_SIZE)
    if len(data) < FILE_HEADER_SIZE:
        raise DataFileError("file header is truncated")
    magic, protocol, checksum, reserved = _FILE_HEADER.unpack(data)
    return FileHeader(magic=magic, protocol=protocol, checksum=checksum, reserved=reserved)


def write_block(stream: BinaryIO, message: TMessage) -> int:
    """Append ``message`` as one block and return the number of entries written."""
    body = b"".join(_LENGTH.pack(len(log)) + bytes(log) for log in message.raw_logs)
    tag = (message.tag | MessageTag.PERSISTENT | MessageTag.STORAGE_BACKEND) & _UINT32_MASK
    stream.write(
        _BLOCK_HEADER.pack(
            message.checksum, tag, message.shard, message.compress, BLOCK_MAGIC, len(body)
        )
    )
    stream.write(body)
    return len(message.raw_logs)


def read_blocks(stream: BinaryIO) -> Iterator[TMessage]:
    """Yield the messages stored in ``stream`` after the file header.

    Reading stops at the end of the data or at a block whose magic is wrong.
    """
    while True:
        head = stream.read(_BLOCK_HEADER.size)
        if len(head) < _BLOCK_HEADER.size:
            if head:
                _log.warning("File oplog block header is truncated")
            return
        checksum, tag, shard, compress, magic, remained = _BLOCK_HEADER.unpack(head)
        if magic != BLOCK_MAGIC:
            _log.critical("File oplog block magic is not 0xeeeeeeee. found 0x%x", magic)
            return

        logs = []
        while remained > 0:
            prefix = stream.read(_LENGTH.size)
            if len(prefix) < _LENGTH.size:
                break
            (length,) = _LENGTH.unpack(prefix)
            data = stream.read(length)
            if len(data) < length:
                break
            logs.append(data)
            remained -= _LENGTH.size + length

        yield TMessage(
            checksum=checksum, tag=tag, shard=shard, compress=compress, raw_logs=logs
        )


class FileWriter:
    """Tunnel writer that appends messages to a local data file.

    Messages are queued by :meth:`send` and written by a background thread,
    which also syncs the file to disk whenever it is idle for a second.
    """

    def __init__(self, local: str) -> None:
        self.local = local
        self.logs = 0
        self._file: BinaryIO | None = None
        self._queue: queue.Queue = queue.Queue(maxsize=WRITER_QUEUE_CAPACITY)
        self._thread: threading.Thread | None = None

    def prepare(self) -> bool:
        if self._thread is not None:
            return True
        try:
            handle = open(self.local, "w+b")
        except OSError as exc:
            _log.critical("File tunnel create data file failed: %s", exc)
            return False
        if not os.path.isfile(self.local):
            handle.close()
            _log.critical("File tunnel check path failed. %s", self.local)
            return False

        handle.write(FileHeader().encode())
        self._file = handle
        self._sync()
        self._thread = threading.Thread(
            target=self._sync_to_disk, name="file-writer", daemon=True
        )
        self._thread.start()
        return True

    def send(self, message: TMessage) -> int:
        if self._thread is None:
            raise RuntimeError("file writer is not prepared")
        if not message.tag & MessageTag.PROBE:
            self._queue.put(message)
        return Reply.OK

    def close(self) -> None:
        """Write everything queued, sync and close the file."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None

    def ack_required(self) -> bool:
        return False

    def parsed_logs_required(self) -> bool:
        return False

    def __enter__(self) -> "FileWriter":
        if not self.prepare():
            raise OSError(f"cannot prepare data file {self.local}")
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _sync(self) -> None:
        assert self._file is not None
        self._file.flush()
        os.fsync(self._file.fileno())

    def _sync_to_disk(self) -> None:
        assert self._file is not None
        try:
            while True:
                try:
                    message = self._queue.get(timeout=FLUSH_INTERVAL)
                except queue.Empty:
                    _log.info("File tunnel sync flush. total oplogs %d", self.logs)
                    self._sync()
                    continue
                if message is _STOP:
                    break
                self.logs += write_block(self._file, message)
        finally:
            self._sync()
            self._file.close()
            self._file = None


class FileReader:
    """Tunnel reader that replays the messages of a data file."""

    def __init__(self, file: str) -> None:
        self.file = file
        self.total_logs = 0
        self.completed = 0
        self._completed_lock = threading.Lock()
        self._pipes: list[queue.Queue] = []
        self._threads: list[threading.Thread] = []

    def link(self, replayers: Sequence) -> None:
        """Open the file and start feeding its messages to ``replayers``."""
        replayers = list(replayers)
        if not replayers:
            raise ValueError("at least one replayer is required")

        try:
            stream = open(self.file, "rb")
        except OSError:
            _log.critical("File tunnel reader open %s failed", self.file)
            raise
        try:
            header = read_header(stream)
        except DataFileError:
            stream.close()
            raise
        if not header.valid:
            stream.close()
            _log.critical("File magic header or protocol header is invalid")
            raise DataFileError("file magic number or protocol number is invalid")

        self._pipes = [queue.Queue() for _ in replayers]
        self._threads = [
            threading.Thread(
                target=self._consume, args=(replayer, pipe), name=f"file-consumer-{i}", daemon=True
            )
            for i, (replayer, pipe) in enumerate(zip(replayers, self._pipes))
        ]
        self._threads.append(
            threading.Thread(target=self._read, args=(stream,), name="file-reader", daemon=True)
        )
        for thread in self._threads:
            thread.start()

    def wait(self) -> None:
        """Block until the whole file has been read and replayed."""
        for thread in self._threads:
            thread.join()

    def _consume(self, replayer, pipe: queue.Queue) -> None:
        seq = 1
        while (message := pipe.get()) is not _STOP:
            seq += 1
            reply = replayer.sync(message, self._completion(message.checksum, seq))
            if reply in (
                Reply.CHECKSUM_INVALID,
                Reply.RETRANSMISSION,
                Reply.COMPRESSOR_NOT_SUPPORTED,
                Reply.NETWORK_OP_FAIL,
            ):
                _log.warning("File tunnel rejected by replayer-%d", message.shard)
            elif reply in (Reply.ERROR, Reply.SERVER_FAULT):
                _log.critical("File tunnel handle server fault")

    def _completion(self, checksum: int, seq: int) -> Callable[[], None]:
        def done() -> None:
            with self._completed_lock:
                self.completed += 1
            _log.info("Sync tunnel message successful, signature: %d, %d", checksum, seq)

        return done

    def _read(self, stream: BinaryIO) -> None:
        try:
            with stream:
                for message in read_blocks(stream):
                    self.total_logs += len(message.raw_logs)
                    message.tag |= MessageTag.RETRANSMISSION
                    message.shard %= len(self._pipes)
                    self._pipes[message.shard].put(message)
                    _log.info(
                        "File tunnel reader extract oplogs with shard[%d], compressor[%d], count (%d)",
                        message.shard,
                        message.compress,
                        len(message.raw_logs),
                    )
        finally:
            for pipe in self._pipes:
                pipe.put(_STOP)
            _log.info("File tunnel reader complete. total oplogs %d", self.total_logs)