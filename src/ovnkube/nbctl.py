"""Subprocess front end for the ``ovn-nbctl`` and ``ovs-vsctl`` tools.

Both tools share the ``db-ctl`` command syntax and can print query results as
JSON.  This module runs them with a per-call timeout, classifies failures into
transient and permanent database errors and converts between Python values
and the OVSDB value notation.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .exceptions import PermanentDBError, TransientDBError

LOG = logging.getLogger(__name__)

WRITE_TIMEOUT = 15.0
READ_TIMEOUT = 5.0

# Substrings of tool error output that indicate the server side may recover.
TRANSIENT_MARKERS = (
    "database connection failed",
    "connection refused",
    "connection reset",
    "connection closed",
    "not connected",
    "broken pipe",
    "timed out",
    "timeout",
    "try again",
    "not leader",
)


class ToolRunner:
    """Run one control binary with a fixed set of leading arguments."""

    def __init__(
        self,
        binary: str,
        base_args: Sequence[str] = (),
        *,
        timeout: float = WRITE_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        self.binary = binary
        self.base_args = list(base_args)
        self.timeout = timeout
        self.read_timeout = read_timeout

    def run(self, args: Sequence[str], *, read_only: bool = False) -> str:
        cmd = [self.binary, *self.base_args, *args]
        timeout = self.read_timeout if read_only else self.timeout
        LOG.debug("Executing: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd, check=False, text=True, capture_output=True, timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise TransientDBError(
                f"{self.binary} did not answer within {timeout}s"
            ) from None
        except OSError as exc:
            raise PermanentDBError(f"cannot execute {self.binary}: {exc}") from None

        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            lowered = stderr.lower()
            if any(marker in lowered for marker in TRANSIENT_MARKERS):
                raise TransientDBError(f"{self.binary} failed: {stderr}")
            raise PermanentDBError(
                f"{self.binary} {' '.join(args)} failed ({proc.returncode}): {stderr}"
            )
        return proc.stdout

    def rows(
        self,
        table: str,
        columns: Sequence[str],
        conditions: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        """Return decoded rows of ``table`` restricted to ``columns``."""

        conditions = list(conditions)
        verb = "find" if conditions else "list"
        output = self.run(
            ["--format=json", f"--columns={','.join(columns)}", verb, table, *conditions],
            read_only=True,
        )
        return decode_rows(output)


# ----------------------------------------------------------------------
# OVSDB value notation
# ----------------------------------------------------------------------
def decode_value(value: Any) -> Any:
    """Translate one JSON-encoded OVSDB datum into Python values."""

    if isinstance(value, list) and len(value) == 2 and isinstance(value[0], str):
        tag, payload = value
        if tag == "map":
            return {decode_value(k): decode_value(v) for k, v in payload}
        if tag == "set":
            return [decode_value(item) for item in payload]
        if tag in ("uuid", "named-uuid"):
            return payload
    return value


def decode_rows(output: str) -> List[Dict[str, Any]]:
    if not output.strip():
        return []
    try:
        document = json.loads(output)
    except ValueError as exc:
        raise PermanentDBError(f"unparseable tool output: {exc}") from None
    headings = document.get("headings", [])
    return [
        {heading: decode_value(datum) for heading, datum in zip(headings, row)}
        for row in document.get("data", [])
    ]


def as_list(value: Any) -> List[Any]:
    """Normalise a set column, which is printed bare when it has one member."""

    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def as_optional(value: Any) -> Optional[Any]:
    items = as_list(value)
    return items[0] if items else None


def quote(value: Any) -> str:
    return json.dumps(str(value))


def encode_map(values: Mapping[str, Any]) -> str:
    items = ",".join(f"{quote(k)}={quote(v)}" for k, v in sorted(values.items()))
    return "{" + items + "}"


def encode_set(values: Iterable[Any]) -> str:
    return "[" + ",".join(quote(v) for v in values) + "]"
