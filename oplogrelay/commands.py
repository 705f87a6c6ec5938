"""Classification of oplog commands and helpers shared by the executors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .oplog import PartialLog

# Server error codes that are known to be harmless for replay.
ERRORS_SHOULD_SKIP = {
    61: "ShardKeyNotFound",
}


@dataclass(frozen=True)
class CommandOperation:
    """How a replicated command has to be treated."""

    concern_sync_data: bool = False
    # some commands such as renameCollection must run on the admin database
    run_on_admin: bool = False


OPS = {
    "create": CommandOperation(),
    "collMod": CommandOperation(),
    "dropDatabase": CommandOperation(),
    "drop": CommandOperation(),
    "deleteIndex": CommandOperation(),
    "deleteIndexes": CommandOperation(),
    "dropIndex": CommandOperation(),
    "dropIndexes": CommandOperation(),
    "renameCollection": CommandOperation(run_on_admin=True),
    "convertToCapped": CommandOperation(),
    "emptycapped": CommandOperation(),
    "applyOps": CommandOperation(concern_sync_data=True),
}

_OP_NAMES = {
    "i": "insert",
    "u": "update",
    "d": "delete",
    "c": "create",
    "n": "noop",
}


def extract_command_name(doc: Mapping[str, Any]) -> str | None:
    """Return the first field of a command document that names a known command."""
    return next((name for name in doc if name in OPS), None)


def is_sync_data_command(operation: str) -> bool:
    """Whether the command carries data that must be replayed."""
    op = OPS.get(operation.strip())
    return op is not None and op.concern_sync_data


def is_run_on_admin_command(operation: str) -> bool:
    """Whether the command has to be run on the admin database."""
    op = OPS.get(operation.strip())
    return op is not None and op.run_on_admin


def lookup_op_name(op: str) -> str:
    """Human-readable name of an oplog operation code."""
    return _OP_NAMES.get(op, "unknown")


def build_metadata(log: PartialLog) -> dict:
    """Request metadata for a write: the gid, when the entry carries one."""
    if log.gid:
        return {"g": log.gid}
    return {}


def should_skip_error(code: int) -> bool:
    """Whether a server error with this code can be ignored."""
    return code in ERRORS_SHOULD_SKIP