"""Detection of unique-index collisions between oplog entries.

Entries that touch the same unique index values must not be replayed
concurrently; the barrier matrix splits a batch into segments that are
safe to execute in parallel.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from bson import ObjectId
from bson.binary import Binary
from bson.timestamp import Timestamp

from .oplog import PartialLog, convert_doc_to_map, get_id_or_ns

_log = logging.getLogger(__name__)

MULTI_COLUMN_INDEX_SPLITTER = "|"

# Signature of a missing value; a prime that differs from both booleans.
_NULL_SIGNATURE = 3.0


@dataclass(eq=False)
class PartialLogWithCallback:
    """An oplog entry and the callback to run once it has been replayed."""

    partial_log: PartialLog
    callback: Callable[[], None] | None = None


@dataclass(eq=False)
class OplogRecord:
    """An entry ready for execution.

    ``wait`` blocks until entries it depends on have been executed.
    """

    original: PartialLogWithCallback
    wait: Callable[[], None] | None = None


@dataclass
class OplogUniqueIdentifier:
    """Signatures of the unique index values an entry touches."""

    order: int
    signature_table: list[str] = field(default_factory=list)
    operations: dict | None = None

    def add_signature(self, signature: str) -> None:
        self.signature_table.append(signature)


def _lookup_index_value(obj: Mapping[str, Any], single_index: str) -> Any:
    parent, _ = convert_doc_to_map(obj)
    # every update operator ends up as $set/$unset in the oplog
    child = parent.get("$set")
    if isinstance(child, dict):
        parent = child

    if single_index in parent:
        return parent[single_index]

    *path, leaf = single_index.split(".")
    in_position = True
    for name in path:
        down = parent.get(name)
        if isinstance(down, dict):
            parent = down
        else:
            in_position = False
    return parent.get(leaf) if in_position else None


def fill_operation_values(log: PartialLogWithCallback) -> None:
    """Append the values of every unique index column found in the entry.

    Inserts extend ``unique_indexes``; updates collect the new values in
    ``unique_indexes_updates``. Other operations are left alone.
    """
    partial = log.partial_log
    if partial.operation not in ("i", "u"):
        return
    if partial.operation == "u":
        partial.unique_indexes_updates = {}
        target = partial.unique_indexes_updates
    else:
        target = partial.unique_indexes

    for key in list(partial.unique_indexes or {}):
        for single_index in key.split(MULTI_COLUMN_INDEX_SPLITTER):
            value = _lookup_index_value(partial.obj, single_index)
            fill = target.get(key)
            if fill is None:
                fill = []
            if isinstance(fill, list):
                target[key] = [*fill, value]


def _signature_text(name: Any, value: Any) -> str:
    return f"{calculate_signature(name) + calculate_signature(value):f}"


def new_unique_identifier(order: int, log: PartialLogWithCallback) -> OplogUniqueIdentifier:
    """Fill in the entry's index values and build its identifier."""
    partial = log.partial_log
    if not partial.unique_indexes:
        raise ValueError("make identifier of empty indexes wrong")

    fill_operation_values(log)

    identifier = OplogUniqueIdentifier(order=order)
    for name, value in partial.unique_indexes.items():
        identifier.add_signature(_signature_text(name, value))
    if partial.operation == "u":
        for name, value in (partial.unique_indexes_updates or {}).items():
            identifier.add_signature(_signature_text(name, value))
    identifier.operations = partial.unique_indexes
    return identifier


def _string_like_signature(codes: Sequence[int]) -> float:
    sign = 0.0
    for code in codes:
        sign = 31.0 * sign + float(code)
    return sign


def _timestamp_value(ts: Timestamp) -> int:
    return (ts.time << 32) | ts.inc


def calculate_signature(obj: Any) -> float:
    """A cheap, order-independent numeric signature of a BSON value.

    Equal values give equal signatures; integers all sign as zero and
    unrecognised types sign as zero as well.
    """
    if obj is None:
        return _NULL_SIGNATURE
    if isinstance(obj, dict):
        return sum(
            (calculate_signature(k) + calculate_signature(v) for k, v in obj.items()),
            0.0,
        )
    if isinstance(obj, (list, tuple)):
        return sum((calculate_signature(v) for v in obj), 0.0)
    if isinstance(obj, (bytes, bytearray)):
        return _string_like_signature(bytes(obj))
    if isinstance(obj, str):
        return _string_like_signature([ord(c) for c in obj])
    if isinstance(obj, Timestamp):
        return float(_timestamp_value(obj))
    if isinstance(obj, bool):
        return 2.0 if obj else 1.0
    if isinstance(obj, float):
        return obj
    if isinstance(obj, int):
        return 0.0
    _log.critical("Bson value signature type is not recognized [%s]", type(obj).__name__)
    return 0.0


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, Binary):
        return "binary"
    if isinstance(value, (bytes, bytearray, list, tuple)):
        return "slice"
    if isinstance(value, dict):
        return "map"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Timestamp):
        return "timestamp"
    if isinstance(value, float):
        return "float"
    if isinstance(value, int):
        return "int"
    return type(value).__name__


def exactly_match(first: Any, second: Any) -> bool:
    """Whether two index values may be considered identical.

    Unknown types and integers compare as equal, which only errs on the
    side of splitting more segments.
    """
    if first is None and second is None:
        return True
    if first is None or second is None or _kind(first) != _kind(second):
        return False

    if isinstance(first, dict):
        if isinstance(second, dict):
            return all(exactly_match(v, second.get(k)) for k, v in first.items())
        return True
    if isinstance(first, (list, tuple)):
        if isinstance(second, (list, tuple)):
            if len(first) != len(second):
                return False
            return all(exactly_match(a, b) for a, b in zip(first, second))
        return True
    if isinstance(first, (bytes, bytearray)):
        if isinstance(second, (bytes, bytearray)):
            return bytes(first) == bytes(second)
        return True
    if isinstance(first, str):
        return first == second
    if isinstance(first, Timestamp):
        return _timestamp_value(first) == _timestamp_value(second)
    if isinstance(first, bool):
        return first == second
    if isinstance(first, float):
        return isinstance(second, float) and first == second
    if isinstance(first, int):
        return True
    _log.critical("bson value check similar. not recognized [%s]", type(first).__name__)
    return True


def _intersection_in_order(one: Mapping[str, Any], other: Mapping[str, Any]) -> bool:
    for key, value in one.items():
        if key in other:
            return exactly_match(value, other[key])
    return False


def intersection(this: Mapping[str, Any] | None, other: Mapping[str, Any] | None) -> bool:
    """Whether two index maps share a column with matching values."""
    if not this or not other:
        return False
    return _intersection_in_order(this, other) or _intersection_in_order(other, this)


def have_mutual_index(first: PartialLog, second: PartialLog) -> bool:
    """Whether two different documents' entries touch the same index values."""
    if first is second:
        return False

    first_id = get_id_or_ns(first)
    second_id = get_id_or_ns(second)
    if (
        isinstance(first_id, ObjectId)
        and isinstance(second_id, ObjectId)
        and first_id == second_id
    ):
        # same record: the executor serialises these already
        return False

    return (
        intersection(first.unique_indexes, second.unique_indexes)
        or intersection(first.unique_indexes, second.unique_indexes_updates)
        or intersection(first.unique_indexes_updates, second.unique_indexes)
        or intersection(first.unique_indexes_updates, second.unique_indexes_updates)
    )


class NoopMatrix:
    """Treats a whole batch as one safe segment."""

    def split(
        self, logs: Sequence[PartialLogWithCallback]
    ) -> list[list[PartialLogWithCallback]]:
        return [list(logs)]

    def convert(self, segment: Sequence[PartialLogWithCallback]) -> list[OplogRecord]:
        return [OplogRecord(original=log) for log in segment]


class BarrierMatrix(NoopMatrix):
    """Splits a batch wherever an entry collides with an earlier one."""

    def split(
        self, logs: Sequence[PartialLogWithCallback]
    ) -> list[list[PartialLogWithCallback]]:
        segments: list[list[PartialLogWithCallback]] = []
        segment: list[PartialLogWithCallback] = []
        signatures: dict[str, list[PartialLogWithCallback]] = defaultdict(list)

        for order, log in enumerate(logs):
            if log.partial_log.unique_indexes:
                identifier = new_unique_identifier(order, log)
                for current in identifier.signature_table:
                    candidates = signatures.get(current)
                    if candidates is not None:
                        for candidate in candidates:
                            if have_mutual_index(candidate.partial_log, log.partial_log):
                                segments.append(segment)
                                segment = []
                                break
                        _log.warning(
                            "Logs have same identifier signature. signature : %s", current
                        )
                    signatures[current].append(log)
            segment.append(log)

        if segment:
            segments.append(segment)
        _log.info("Barrier matrix split vector to length %d", len(segments))
        return segments