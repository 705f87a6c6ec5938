import pytest

from oplogrelay.message import (
    MessageDecodeError,
    MessageTag,
    TMessage,
    WMessage,
    decode_message,
)


def test_crc32_single_entry_is_standard_check_value():
    assert TMessage(raw_logs=[b"123456789"]).crc32() == 0xCBF43926


def test_crc32_xor_properties():
    a, b = b"first entry", b"second entry"
    empty = TMessage().crc32()
    assert TMessage(raw_logs=[a, a]).crc32() == empty
    combined = TMessage(raw_logs=[a, b]).crc32()
    assert combined == TMessage(raw_logs=[a]).crc32() ^ TMessage(raw_logs=[b]).crc32()
    assert combined == TMessage(raw_logs=[b, a]).crc32()


def test_to_bytes_wire_layout():
    message = TMessage(checksum=1, tag=2, shard=3, compress=4, raw_logs=[b"ab"])
    assert message.to_bytes() == bytes.fromhex(
        "00000001" "00000002" "00000003" "00000004" "00000001" "00000002" "6162"
    )


def test_round_trip():
    message = TMessage(
        checksum=0xDEADBEEF,
        tag=MessageTag.RESIDENT | MessageTag.PERSISTENT,
        shard=7,
        compress=3,
        raw_logs=[b"abc", b"", b"\x00\xff" * 50],
    )
    decoded = decode_message(message.to_bytes())
    assert decoded == message


def test_probe_round_trip_without_logs():
    probe = TMessage(tag=MessageTag.PROBE, shard=2)
    decoded = decode_message(probe.to_bytes())
    assert decoded.raw_logs == []
    assert decoded.tag == MessageTag.PROBE
    assert decoded.shard == 2


def test_non_probe_without_logs_is_rejected():
    with pytest.raises(MessageDecodeError):
        decode_message(TMessage(shard=1).to_bytes())


def test_probe_with_trailing_bytes_is_rejected():
    data = TMessage(tag=MessageTag.PROBE, raw_logs=[b"x"]).to_bytes()
    with pytest.raises(MessageDecodeError):
        decode_message(data)


def test_truncated_header_is_rejected():
    data = TMessage(raw_logs=[b"x"]).to_bytes()
    with pytest.raises(MessageDecodeError):
        decode_message(data[:10])


def test_truncated_payload_is_rejected():
    data = TMessage(raw_logs=[b"abc", b"defg"]).to_bytes()
    with pytest.raises(MessageDecodeError):
        decode_message(data[:-1])


def test_approximate_size_sums_entry_lengths():
    logs = [b"abc", b"de", b""]
    assert TMessage(raw_logs=logs).approximate_size() == sum(len(log) for log in logs)


def test_str_format():
    message = TMessage(checksum=1, tag=2, shard=3, compress=4, raw_logs=[b"x"])
    assert str(message) == "[cksum:1, tag:2, shard:3, compress:4, logs_len:1]"


def test_wmessage_encodes_like_tmessage_and_keeps_parsed_logs():
    parsed = [{"op": "i"}]
    wrapped = WMessage(checksum=5, shard=1, raw_logs=[b"entry"], parsed_logs=parsed)
    plain = TMessage(checksum=5, shard=1, raw_logs=[b"entry"])
    assert wrapped.to_bytes() == plain.to_bytes()
    assert wrapped.crc32() == plain.crc32()
    assert wrapped.parsed_logs == parsed


def test_tag_flags_survive_round_trip():
    tag = MessageTag.RETRANSMISSION | MessageTag.STORAGE_BACKEND
    decoded = decode_message(TMessage(tag=tag, raw_logs=[b"z"]).to_bytes())
    assert decoded.tag == tag
    assert (decoded.tag & MessageTag.RETRANSMISSION) == MessageTag.RETRANSMISSION
    assert (decoded.tag & MessageTag.STORAGE_BACKEND) == MessageTag.STORAGE_BACKEND
    assert (decoded.tag & MessageTag.PROBE) == 0