"""Module that stamps outgoing messages with a checksum of their entries."""

from __future__ import annotations

import logging

from .message import Reply, TMessage

_log = logging.getLogger(__name__)


class ChecksumCalculator:
    """Writes the CRC-32 checksum of a message's raw entries into it."""

    def is_registered(self) -> bool:
        return True

    def install(self) -> bool:
        return True

    def handle(self, message: TMessage) -> int:
        if message.raw_logs:
            message.checksum = message.crc32()
            _log.debug("Tunnel message checksum value 0x%x", message.checksum)
        return Reply.OK