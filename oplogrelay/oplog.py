"""Oplog entries, ordered-document helpers and shard hashing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, MutableMapping

from bson import ObjectId

_log = logging.getLogger(__name__)

PRIMARY_KEY = "_id"

SHARD_BY_ID = "id"
SHARD_BY_NAMESPACE = "collection"
SHARD_AUTOMATIC = "auto"

DEFAULT_HASH_VALUE = 0

_UINT32_MASK = 0xFFFFFFFF

# (oplog field name, attribute name) in declaration order
_TAGGED_FIELDS = (
    ("ts", "timestamp"),
    ("op", "operation"),
    ("g", "gid"),
    ("ns", "namespace"),
    ("o", "obj"),
    ("o2", "query"),
    ("uk", "unique_indexes"),
    ("lsid", "lsid"),
    ("fromMigrate", "from_migrate"),
)


@dataclass
class PartialLog:
    """The parts of an oplog entry the relay works with.

    The last three fields are never persisted; they are filled in by
    later processing stages.
    """

    timestamp: Any = 0
    operation: str = ""
    gid: str = ""
    namespace: str = ""
    obj: dict = field(default_factory=dict)
    query: dict | None = None
    unique_indexes: dict | None = None
    lsid: Any = None
    from_migrate: bool = False

    unique_indexes_updates: dict | None = None
    raw_size: int = 0
    source_id: int = 0

    def dump(self, keys: Iterable[str]) -> dict:
        """Return the oplog fields whose names are in ``keys``, in field order."""
        wanted = set(keys)
        return {
            tag: getattr(self, attr) for tag, attr in _TAGGED_FIELDS if tag in wanted
        }


@dataclass
class GenericOplog:
    """A raw oplog entry together with its parsed form."""

    raw: bytes
    parsed: PartialLog


def new_partial_log(data: Mapping[str, Any]) -> PartialLog:
    """Build a PartialLog from an oplog document keyed by oplog field names."""
    values = {attr: data[tag] for tag, attr in _TAGGED_FIELDS if tag in data}
    return PartialLog(**values)


def log_entry_encode(logs: Iterable[GenericOplog]) -> list[bytes]:
    """Return the raw bytes of every entry."""
    return [log.raw for log in logs]


def log_parsed(logs: Iterable[GenericOplog]) -> list[PartialLog]:
    """Return the parsed form of every entry."""
    return [log.parsed for log in logs]


def get_key_with_index(doc: Mapping[str, Any], wanted: str = "") -> tuple[Any, int]:
    """Return the value of ``wanted`` (``_id`` when empty) and its position.

    A missing key gives ``(None, 0)``.
    """
    wanted = wanted or PRIMARY_KEY
    for position, (name, value) in enumerate(doc.items()):
        if name == wanted:
            return value, position
    return None, 0


def get_key(doc: Mapping[str, Any], wanted: str = "") -> Any:
    """Return the value of ``wanted`` (``_id`` when empty), or None."""
    value, _ = get_key_with_index(doc, wanted)
    return value


def convert_doc_to_map(doc: Mapping[str, Any]) -> tuple[dict, set[str]]:
    """Return a plain dict copy of ``doc`` and the set of its keys."""
    return dict(doc), set(doc)


def remove_field(doc: MutableMapping[str, Any], key: str) -> MutableMapping[str, Any]:
    """Remove ``key`` from ``doc`` in place and return the document."""
    doc.pop(key, None)
    return doc


def set_field(doc: MutableMapping[str, Any], key: str, value: Any) -> None:
    """Replace the value of ``key`` in place; absent keys are not added."""
    if key in doc:
        doc[key] = value


def get_id_or_ns(log: PartialLog) -> Any:
    """Return the document id an entry operates on, or its namespace."""
    if log.operation in ("i", "d"):
        return get_key(log.obj)
    if log.operation == "u":
        if log.query and PRIMARY_KEY in log.query:
            return log.query[PRIMARY_KEY]
        return get_key(log.obj)
    if log.operation != "c":
        _log.critical("Unrecognized oplog object operation %s", log.operation)
    return log.namespace


def string_hash_value(s: str) -> int:
    """Java-style string hash, kept to 32 unsigned bits."""
    value = 0
    for char in s:
        value = (31 * value + ord(char)) & _UINT32_MASK
    return value


def hash_object(obj: Any) -> int:
    """Hash an ObjectId, string or int; anything else hashes to the default."""
    if isinstance(obj, ObjectId):
        return string_hash_value(str(obj))
    if isinstance(obj, str):
        return string_hash_value(obj)
    if isinstance(obj, int) and not isinstance(obj, bool):
        return obj & _UINT32_MASK
    if obj is None:
        _log.warning("Hash object is NIL. use default value %d", DEFAULT_HASH_VALUE)
    else:
        _log.warning(
            "Hash object is UNKNOWN type[%s], value is [%r]. use default value %d",
            type(obj).__name__,
            obj,
            DEFAULT_HASH_VALUE,
        )
    return DEFAULT_HASH_VALUE


class PrimaryKeyHasher:
    """Routes entries for the same document to the same shard."""

    def distribute(self, log: PartialLog, mod: int) -> int:
        if mod == 1:
            return 0
        if log.operation == "n":
            return DEFAULT_HASH_VALUE

        hash_target = None
        if log.operation in ("i", "d", "u", "c"):
            hash_target = get_id_or_ns(log)
        if hash_target is None:
            _log.warning(
                "Couldn't extract hash object. use Oplog.Namespace instead %r", log
            )
            hash_target = log.namespace
        return hash_object(hash_target) % mod


class TableHasher:
    """Routes entries for the same collection to the same shard."""

    def distribute(self, log: PartialLog, mod: int) -> int:
        if mod == 1:
            return 0
        if not log.namespace:
            return DEFAULT_HASH_VALUE
        return string_hash_value(log.namespace) % mod