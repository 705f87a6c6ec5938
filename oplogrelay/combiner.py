"""Merging of consecutive oplog records into batched write groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable

from .collision import OplogRecord

OPLOGS_MAX_GROUP_NUM = 1000
OPLOGS_MAX_GROUP_SIZE = 12 * 1024 * 1024  # MongoDB limits a request to 16MB


@dataclass
class OplogsGroup:
    """Records with the same namespace and operation, sent in one request."""

    ns: str
    op: str
    oplog_records: list[OplogRecord] = field(default_factory=list)
    completion_list: list[Callable[[], None]] = field(default_factory=list)

    def completion(self) -> None:
        """Run the callbacks of every record in the group, in order."""
        for callback in self.completion_list:
            callback()


@dataclass
class LogsGroupCombiner:
    """Groups records by count and total raw size limits."""

    max_group_nr: int = OPLOGS_MAX_GROUP_NUM
    max_group_size: int = OPLOGS_MAX_GROUP_SIZE

    def merge_to_groups(self, logs: Iterable[OplogRecord]) -> list[OplogsGroup]:
        groups: list[OplogsGroup] = []
        force_split = False
        size_in_group = 0

        for log in logs:
            partial = log.original.partial_log
            last = groups[-1] if groups else None
            if (
                not force_split
                and last is not None
                and len(last.oplog_records) < self.max_group_nr
                and size_in_group + partial.raw_size < self.max_group_size
                and last.op == partial.operation
                and last.ns == partial.namespace
            ):
                self._merge(last, log)
                size_in_group += partial.raw_size
            else:
                groups.append(self._start_new_group(log))
                size_in_group = partial.raw_size

            # a record that must wait closes its group
            force_split = log.wait is not None
        return groups

    @staticmethod
    def _merge(group: OplogsGroup, log: OplogRecord) -> None:
        group.oplog_records.append(log)
        if log.original.callback is not None:
            group.completion_list.append(log.original.callback)

    @staticmethod
    def _start_new_group(log: OplogRecord) -> OplogsGroup:
        partial = log.original.partial_log
        callbacks = [log.original.callback] if log.original.callback is not None else []
        return OplogsGroup(
            ns=partial.namespace,
            op=partial.operation,
            oplog_records=[log],
            completion_list=callbacks,
        )