"""Example receiver-side replayer that validates, decompresses and parses messages."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

import bson
from bson.errors import InvalidBSON
from bson.timestamp import Timestamp

from .compression import NO_COMPRESS, CompressionError, Compressor, get_compressor_by_id
from .message import MessageTag, Reply, TMessage
from .oplog import PartialLog, new_partial_log

_log = logging.getLogger(__name__)

PENDING_QUEUE_CAPACITY = 256

_STOP = object()


def _timestamp_to_int(ts: Any) -> int:
    if isinstance(ts, Timestamp):
        return (ts.time << 32) | ts.inc
    return int(ts)


class ExampleReplayer:
    """Accepts tunnel messages and parses their entries on a worker thread.

    ``ack`` holds the timestamp of the newest entry handled.
    """

    def __init__(self, replayer_id: int = 0) -> None:
        self.id = replayer_id
        self.retransmit = False
        self.ack = 0
        self.compressor: Compressor | None = None
        self.error: Exception | None = None
        self._pending: queue.Queue = queue.Queue(maxsize=PENDING_QUEUE_CAPACITY)
        _log.info("ExampleReplayer start. pending queue capacity %d", PENDING_QUEUE_CAPACITY)
        self._handler = threading.Thread(
            target=self._handle, name=f"replayer-{replayer_id}", daemon=True
        )
        self._handler.start()

    def sync(self, message: TMessage, completion: Callable[[], None] | None = None) -> int:
        """Validate and queue ``message``; return the ack or a negative reply."""
        if self.error is not None:
            raise RuntimeError("replayer handler stopped") from self.error

        # after a restart or a bad message the peer has to resend everything
        if self.retransmit:
            if not message.tag & MessageTag.RETRANSMISSION:
                return Reply.RETRANSMISSION
            self.retransmit = False

        if message.checksum != 0:
            recalculated = message.crc32()
            if recalculated != message.checksum:
                self.retransmit = True
                _log.critical(
                    "Tunnel message checksum bad. recalculated is 0x%x. origin is 0x%x",
                    recalculated,
                    message.checksum,
                )
                return Reply.CHECKSUM_INVALID

        if message.compress != NO_COMPRESS:
            try:
                self.compressor = get_compressor_by_id(message.compress)
            except CompressionError:
                self.retransmit = True
                _log.critical("Tunnel message compressor not support. is %d", message.compress)
                return Reply.COMPRESSOR_NOT_SUPPORTED
            decompressed = []
            for chunk in message.raw_logs:
                try:
                    decompressed.append(self.compressor.decompress(chunk))
                except CompressionError:
                    continue
            if len(decompressed) != len(message.raw_logs):
                self.retransmit = True
                _log.critical(
                    "Decompress result isn't equivalent. len(decompress) %d, len(Logs) %d",
                    len(decompressed),
                    len(message.raw_logs),
                )
                return Reply.DECOMPRESS_INVALID
            message.raw_logs = decompressed

        self._pending.put((message, completion))
        return self.get_acked()

    def get_acked(self) -> int:
        return self.ack

    def close(self) -> None:
        """Handle everything queued and stop the worker thread."""
        if self._handler.is_alive():
            self._pending.put(_STOP)
        self._handler.join()

    def __enter__(self) -> "ExampleReplayer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _handle(self) -> None:
        while (item := self._pending.get()) is not _STOP:
            message, completion = item
            if not message.raw_logs:
                # probe request
                continue

            oplogs: list[PartialLog] = []
            for raw in message.raw_logs:
                try:
                    log = new_partial_log(bson.decode(bytes(raw)))
                except (InvalidBSON, ValueError, TypeError) as exc:
                    self.error = exc
                    _log.critical("unmarshal oplog[%r] failed[%s]", raw, exc)
                    return
                log.raw_size = len(raw)
                _log.info("%r", log)
                oplogs.append(log)

            if completion is not None:
                completion()

            self.ack = _timestamp_to_int(oplogs[-1].timestamp)
            _log.debug("handle ack[%d]", self.ack)