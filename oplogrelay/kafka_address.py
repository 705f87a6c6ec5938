"""Parsing of Kafka tunnel addresses of the form ``topic@broker1,broker2``."""

from __future__ import annotations

TOPIC_DEFAULT = "mongoshake"
TOPIC_SPLITTER = "@"
BROKERS_SPLITTER = ","
DEFAULT_PARTITION = 0


def parse_address(address: str) -> tuple[str, list[str]]:
    """Return the topic and broker list named by ``address``.

    The topic part is optional and defaults to ``TOPIC_DEFAULT``.
    Raises ValueError when more than one topic separator is present.
    """
    parts = address.split(TOPIC_SPLITTER)
    if len(parts) > 2:
        raise ValueError("address format error")
    topic = parts[0] if len(parts) == 2 else TOPIC_DEFAULT
    brokers = parts[-1].split(BROKERS_SPLITTER)
    return topic, brokers