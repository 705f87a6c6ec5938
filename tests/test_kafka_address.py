import pytest

from oplogrelay.kafka_address import TOPIC_DEFAULT, parse_address


def test_topic_and_brokers():
    assert parse_address("events@host1:9092,host2:9092") == (
        "events",
        ["host1:9092", "host2:9092"],
    )


def test_default_topic():
    assert parse_address("host1:9092") == ("mongoshake", ["host1:9092"])
    assert TOPIC_DEFAULT == "mongoshake"


def test_single_broker_with_topic():
    topic, brokers = parse_address("t@localhost:9092")
    assert topic == "t"
    assert brokers == ["localhost:9092"]


def test_too_many_separators():
    with pytest.raises(ValueError, match="address format error"):
        parse_address("a@b@c")


def test_empty_topic_is_kept():
    topic, brokers = parse_address("@b1,b2,b3")
    assert topic == ""
    assert brokers == ["b1", "b2", "b3"]