"""Command that prints the parts of an ObjectId."""

from __future__ import annotations

import os
import sys
import time
from typing import Sequence

from bson import ObjectId
from bson.errors import InvalidId


def describe_object_id(hex_string: str) -> str:
    """Return a multi-line description of the ObjectId written as hex."""
    try:
        oid = ObjectId(hex_string)
    except (InvalidId, TypeError) as exc:
        raise ValueError(f"invalid ObjectId hex: {hex_string!r}") from exc

    raw = oid.binary
    timestamp = int.from_bytes(raw[0:4], "big")
    machine = raw[4:7]
    pid = int.from_bytes(raw[7:9], "big")
    counter = int.from_bytes(raw[9:12], "big")
    formatted = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))
    machine_text = "[" + " ".join(str(b) for b in machine) + "]"
    return "\n".join(
        [
            f"timestamp : {timestamp} , {formatted}",
            f"machine : {machine_text}",
            f"pid {pid}",
            f"counter {counter}",
        ]
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("Usage", os.path.basename(sys.argv[0]) or "objectid", "${ObjectId}")
        return 0
    try:
        print(describe_object_id(args[0]))
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())