"""Compressors for oplog entries and the module that applies them to messages."""

from __future__ import annotations

import gzip
import logging
import zlib

from .message import Reply, TMessage

_log = logging.getLogger(__name__)

COMPRESSION_NONE = "none"
COMPRESSION_GZIP = "gzip"
COMPRESSION_ZLIB = "zlib"
COMPRESSION_DEFLATE = "deflate"
COMPRESSION_SNAPPY = "snappy"

NO_COMPRESS = 0
COMPRESS_WITH_GZIP = 1
COMPRESS_WITH_SNAPPY = 2
COMPRESS_WITH_ZLIB = 3
COMPRESS_WITH_DEFLATE = 4

BEST_SPEED = 1
BEST_COMPRESSION = 9
NORMAL_COMPRESSION = -1


class CompressionError(ValueError):
    """Raised when a compressor is unknown or data cannot be (de)compressed."""


class Compressor:
    """Base class of the entry compressors."""

    name: str = ""
    compressor_id: int = NO_COMPRESS

    def __init__(self, level: int = BEST_COMPRESSION) -> None:
        self.level = level

    def compress(self, chunk: bytes) -> bytes:
        raise NotImplementedError

    def decompress(self, compressed: bytes) -> bytes:
        raise NotImplementedError


class GzipCompressor(Compressor):
    """Gzip-framed deflate."""

    name = COMPRESSION_GZIP
    compressor_id = COMPRESS_WITH_GZIP

    def compress(self, chunk: bytes) -> bytes:
        return gzip.compress(bytes(chunk), compresslevel=_gzip_level(self.level), mtime=0)

    def decompress(self, compressed: bytes) -> bytes:
        try:
            return gzip.decompress(bytes(compressed))
        except (OSError, EOFError, zlib.error) as exc:
            raise CompressionError("GZip uncompress failed") from exc


class ZlibCompressor(Compressor):
    """Zlib-framed deflate."""

    name = COMPRESSION_ZLIB
    compressor_id = COMPRESS_WITH_ZLIB

    def compress(self, chunk: bytes) -> bytes:
        return zlib.compress(bytes(chunk), self.level)

    def decompress(self, compressed: bytes) -> bytes:
        try:
            return zlib.decompress(bytes(compressed))
        except zlib.error as exc:
            raise CompressionError("Zlib uncompress failed") from exc


class DeflateCompressor(Compressor):
    """Raw deflate without any framing."""

    name = COMPRESSION_DEFLATE
    compressor_id = COMPRESS_WITH_DEFLATE

    def compress(self, chunk: bytes) -> bytes:
        engine = zlib.compressobj(self.level, zlib.DEFLATED, -zlib.MAX_WBITS)
        return engine.compress(bytes(chunk)) + engine.flush()

    def decompress(self, compressed: bytes) -> bytes:
        try:
            engine = zlib.decompressobj(-zlib.MAX_WBITS)
            data = engine.decompress(bytes(compressed)) + engine.flush()
        except zlib.error as exc:
            raise CompressionError("deflate uncompressed failed") from exc
        if not engine.eof:
            raise CompressionError("deflate uncompressed failed")
        return data


class SnappyCompressor(Compressor):
    """Placeholder codec that passes data through unchanged."""

    name = COMPRESSION_SNAPPY
    compressor_id = COMPRESS_WITH_SNAPPY

    def compress(self, chunk: bytes) -> bytes:
        return bytes(chunk)

    def decompress(self, compressed: bytes) -> bytes:
        return bytes(compressed)


def _gzip_level(level: int) -> int:
    return 6 if level < 0 else level


_GZIP = GzipCompressor()
_SNAPPY = SnappyCompressor()
_ZLIB = ZlibCompressor()
_DEFLATE = DeflateCompressor()

_BY_NAME = {c.name: c for c in (_GZIP, _SNAPPY, _ZLIB, _DEFLATE)}
_BY_ID = {c.compressor_id: c for c in (_GZIP, _SNAPPY, _ZLIB, _DEFLATE)}


def get_compressor_by_name(name: str) -> Compressor:
    """Return the shared compressor called ``name``; "none" is not one."""
    try:
        return _BY_NAME[name]
    except KeyError:
        raise CompressionError("invalid compressor name") from None


def get_compressor_by_id(compressor_id: int) -> Compressor:
    """Return the shared compressor with wire id ``compressor_id``."""
    try:
        return _BY_ID[compressor_id]
    except KeyError:
        raise CompressionError("invalid compressor id") from None


class CompressionModule:
    """Compresses every raw entry of outgoing messages with one compressor."""

    def __init__(self, compressor_name: str = COMPRESSION_NONE) -> None:
        self.compressor_name = compressor_name
        self.zipper: Compressor | None = None

    def is_registered(self) -> bool:
        return self.compressor_name != COMPRESSION_NONE

    def install(self) -> bool:
        try:
            self.zipper = get_compressor_by_name(self.compressor_name)
        except CompressionError:
            _log.critical("Worker create compressor %s failed", self.compressor_name)
            return False
        self.zipper.level = BEST_COMPRESSION
        return True

    def handle(self, message: TMessage) -> int:
        """Compress the message in place and return a reply code."""
        if not message.raw_logs:
            message.compress = NO_COMPRESS
            return Reply.OK
        if self.zipper is None:
            raise RuntimeError("compression module is not installed")

        origin_size = 0
        compressed_size = 0
        compressed = []
        for log in message.raw_logs:
            origin_size += len(log)
            try:
                zipped = self.zipper.compress(log)
            except CompressionError:
                continue
            compressed_size += len(zipped)
            compressed.append(zipped)

        if compressed_size == 0 or len(compressed) != len(message.raw_logs):
            _log.critical(
                "Compressor result isn't equivalent. len(compressed) %d, len(Logs) %d",
                len(compressed),
                len(message.raw_logs),
            )
            return Reply.SERVER_FAULT

        if origin_size:
            _log.debug(
                "Compressor-%s condense raw_size(%d), compress_size(%d), compress_ratio %d%%",
                self.zipper.name,
                origin_size,
                compressed_size,
                compressed_size * 100 // origin_size,
            )
        message.compress = self.zipper.compressor_id
        message.raw_logs = compressed
        return Reply.OK