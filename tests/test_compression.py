import pytest

from oplogrelay.compression import (
    COMPRESS_WITH_DEFLATE,
    COMPRESS_WITH_GZIP,
    COMPRESS_WITH_SNAPPY,
    COMPRESS_WITH_ZLIB,
    NO_COMPRESS,
    CompressionError,
    CompressionModule,
    DeflateCompressor,
    GzipCompressor,
    SnappyCompressor,
    ZlibCompressor,
    get_compressor_by_id,
    get_compressor_by_name,
)
from oplogrelay.message import Reply, TMessage

PAYLOAD = b"oplog entry " * 50


@pytest.mark.parametrize(
    "cls", [GzipCompressor, ZlibCompressor, DeflateCompressor, SnappyCompressor]
)
def test_round_trip(cls):
    codec = cls()
    assert codec.decompress(codec.compress(PAYLOAD)) == PAYLOAD


@pytest.mark.parametrize("cls", [GzipCompressor, ZlibCompressor, DeflateCompressor])
def test_real_codecs_shrink_repetitive_data(cls):
    assert len(cls().compress(PAYLOAD)) < len(PAYLOAD)


def test_gzip_has_gzip_magic():
    assert GzipCompressor().compress(b"abc")[:2] == b"\x1f\x8b"


def test_snappy_is_identity():
    assert SnappyCompressor().compress(PAYLOAD) == PAYLOAD


@pytest.mark.parametrize(
    "name, ident",
    [
        ("gzip", COMPRESS_WITH_GZIP),
        ("snappy", COMPRESS_WITH_SNAPPY),
        ("zlib", COMPRESS_WITH_ZLIB),
        ("deflate", COMPRESS_WITH_DEFLATE),
    ],
)
def test_lookup_by_name_and_id_agree(name, ident):
    by_name = get_compressor_by_name(name)
    assert by_name.name == name
    assert by_name.compressor_id == ident
    assert get_compressor_by_id(ident) is by_name


@pytest.mark.parametrize("name", ["none", "lz4", ""])
def test_invalid_name(name):
    with pytest.raises(CompressionError):
        get_compressor_by_name(name)


@pytest.mark.parametrize("ident", [NO_COMPRESS, 5, 99])
def test_invalid_id(ident):
    with pytest.raises(CompressionError):
        get_compressor_by_id(ident)


@pytest.mark.parametrize("cls", [GzipCompressor, ZlibCompressor, DeflateCompressor])
def test_garbage_fails_to_decompress(cls):
    with pytest.raises(CompressionError):
        cls().decompress(b"definitely not compressed")


def test_module_registration():
    assert CompressionModule("none").is_registered() is False
    assert CompressionModule("gzip").is_registered() is True


def test_module_install_fails_for_unknown_name():
    assert CompressionModule("bogus").install() is False


def test_module_handle_compresses_each_entry():
    module = CompressionModule("zlib")
    assert module.install() is True
    logs = [PAYLOAD, b"second" * 20]
    message = TMessage(raw_logs=list(logs))
    assert module.handle(message) == Reply.OK
    assert message.compress == COMPRESS_WITH_ZLIB
    codec = get_compressor_by_id(message.compress)
    assert [codec.decompress(log) for log in message.raw_logs] == logs


def test_module_handle_empty_message():
    module = CompressionModule("gzip")
    module.install()
    message = TMessage(compress=COMPRESS_WITH_GZIP)
    assert module.handle(message) == Reply.OK
    assert message.compress == NO_COMPRESS
    assert message.raw_logs == []


def test_module_handle_zero_output_is_fault():
    module = CompressionModule("snappy")
    module.install()
    message = TMessage(raw_logs=[b"", b""])
    assert module.handle(message) == Reply.SERVER_FAULT
    assert message.compress == 0