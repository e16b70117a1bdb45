"""Idempotent access to the OVN northbound database.

The reconcilers only ever describe the desired state of a single entity:
``ensure(kind, key, fields)`` creates or updates the entity so that it
carries exactly ``fields``, ``delete(kind, key)`` removes it and
``list(kind)`` returns what is there.  Every call is a read-modify-write
against the database, serialised per ``(kind, key)`` in this process and
retried on transient failures.

The actual storage is a :class:`NorthboundBackend`.  :class:`NbctlBackend`
drives ``ovn-nbctl``; the unit tests provide an in-memory one.
"""

from __future__ import annotations

import abc
import contextlib
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from .backoff import Backoff, sleep
from .exceptions import (
    Cancelled,
    DBRetryExhausted,
    NotReadyError,
    TransientDBError,
)
from .nbctl import ToolRunner, as_list, as_optional, encode_map, encode_set, quote

LOG = logging.getLogger(__name__)

DEFAULT_RETRIES = 8

Fields = Dict[str, Any]


class Kind(enum.Enum):
    SWITCH = "logical-switch"
    SWITCH_PORT = "logical-switch-port"
    ROUTER = "logical-router"
    ROUTER_PORT = "logical-router-port"
    STATIC_ROUTE = "static-route"
    NAT = "nat"
    LOAD_BALANCER = "load-balancer"
    LOAD_BALANCER_VIP = "load-balancer-vip"
    LOAD_BALANCER_BINDING = "load-balancer-binding"


@dataclass(frozen=True)
class Entity:
    kind: Kind
    key: str
    fields: Mapping[str, Any]


# ----------------------------------------------------------------------
# Composite keys for entities without a name of their own
# ----------------------------------------------------------------------
def route_key(router: str, ip_prefix: str, policy: str = "dst-ip") -> str:
    return f"{router}|{policy}|{ip_prefix}"


def nat_key(router: str, nat_type: str, logical_ip: str) -> str:
    return f"{router}|{nat_type}|{logical_ip}"


def vip_key(load_balancer: str, vip: str) -> str:
    return f"{load_balancer}|{vip}"


def binding_key(load_balancer: str, target_type: str, target: str) -> str:
    return f"{load_balancer}@{target_type}:{target}"


def canonical(fields: Mapping[str, Any]) -> Fields:
    """Bring ``fields`` into the form the backends return.

    Maps become string dicts, sequences become sorted string lists and
    ``None`` becomes the empty string, so that desired and observed state
    compare equal whenever they mean the same thing.
    """

    result: Fields = {}
    for name, value in fields.items():
        if isinstance(value, Mapping):
            result[name] = {str(k): str(v) for k, v in sorted(value.items())}
        elif isinstance(value, (list, tuple, set, frozenset)):
            result[name] = sorted(str(item) for item in value)
        elif value is None:
            result[name] = ""
        else:
            result[name] = str(value)
    return result


class NorthboundBackend(abc.ABC):
    """Storage primitives the client builds ``ensure`` and ``delete`` on."""

    @abc.abstractmethod
    def read(self, kind: Kind, key: str) -> Optional[Fields]:
        """Return the canonical fields of one entity or ``None``."""

    @abc.abstractmethod
    def write(self, kind: Kind, key: str, fields: Fields, current: Optional[Fields]) -> None:
        """Create or overwrite one entity; ``current`` is what ``read`` saw."""

    @abc.abstractmethod
    def remove(self, kind: Kind, key: str, current: Fields) -> None:
        """Remove one entity known to exist."""

    @abc.abstractmethod
    def list(self, kind: Kind) -> Dict[str, Fields]:
        """Return every entity of ``kind`` keyed like ``read``."""


class NorthboundClient:
    """Serialised, retried, idempotent front to a :class:`NorthboundBackend`."""

    def __init__(
        self,
        backend: NorthboundBackend,
        stop_event: threading.Event,
        *,
        retries: int = DEFAULT_RETRIES,
        backoff: Optional[Backoff] = None,
    ) -> None:
        self._backend = backend
        self._stop = stop_event
        self._retries = retries
        self._backoff = backoff or Backoff()
        self._locks: Dict[Tuple[Kind, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._cond = threading.Condition()
        self._in_flight = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ensure(self, kind: Kind, key: str, fields: Mapping[str, Any]) -> bool:
        """Make ``key`` carry exactly ``fields``; return whether it changed."""

        desired = canonical(fields)

        def apply() -> bool:
            current = self._backend.read(kind, key)
            if current == desired:
                return False
            self._backend.write(kind, key, desired, current)
            LOG.debug("%s %s %s", "updated" if current else "created", kind.value, key)
            return True

        with self._serialised(kind, key):
            return self._retry(apply, f"ensure {kind.value} {key}")

    def delete(self, kind: Kind, key: str) -> bool:
        """Remove ``key`` if present; return whether anything was removed."""

        def apply() -> bool:
            current = self._backend.read(kind, key)
            if current is None:
                return False
            self._backend.remove(kind, key, current)
            LOG.debug("deleted %s %s", kind.value, key)
            return True

        with self._serialised(kind, key):
            return self._retry(apply, f"delete {kind.value} {key}")

    def get(self, kind: Kind, key: str) -> Optional[Fields]:
        with self._tracked():
            return self._retry(
                lambda: self._backend.read(kind, key), f"read {kind.value} {key}"
            )

    def list(
        self, kind: Kind, predicate: Optional[Callable[[Entity], bool]] = None
    ) -> List[Entity]:
        with self._tracked():
            found = self._retry(lambda: self._backend.list(kind), f"list {kind.value}")
        entities = [Entity(kind, key, found[key]) for key in sorted(found)]
        if predicate is None:
            return entities
        return [entity for entity in entities if predicate(entity)]

    def close(self, deadline: float) -> bool:
        """Reject new calls and wait up to ``deadline`` seconds for running ones."""

        end = time.monotonic() + deadline
        with self._cond:
            self._closed = True
            while self._in_flight:
                remaining = end - time.monotonic()
                if remaining <= 0:
                    LOG.warning(
                        "closing northbound client with %d call(s) still running",
                        self._in_flight,
                    )
                    return False
                self._cond.wait(remaining)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _tracked(self) -> Iterator[None]:
        with self._cond:
            if self._closed:
                raise Cancelled("northbound client is closed")
            self._in_flight += 1
        try:
            yield
        finally:
            with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    @contextlib.contextmanager
    def _serialised(self, kind: Kind, key: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault((kind, key), threading.Lock())
        with self._tracked(), lock:
            yield

    def _retry(self, operation: Callable[[], Any], what: str) -> Any:
        attempt = 0
        while True:
            try:
                return operation()
            except DBRetryExhausted:
                raise
            except TransientDBError as exc:
                attempt += 1
                if attempt > self._retries:
                    raise DBRetryExhausted(
                        f"{what} failed after {self._retries} retries: {exc}"
                    ) from exc
                delay = self._backoff.delay(attempt - 1)
                LOG.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    what,
                    attempt,
                    self._retries,
                    delay,
                    exc,
                )
                sleep(self._stop, delay)


# ----------------------------------------------------------------------
# ovn-nbctl backend
# ----------------------------------------------------------------------
def _named(runner: ToolRunner, table: str, columns: List[str], name: str) -> Optional[Dict[str, Any]]:
    rows = runner.rows(table, columns, [f"name={quote(name)}"])
    return rows[0] if rows else None


def _parents(runner: ToolRunner, table: str, column: str) -> Dict[str, str]:
    """Map child row uuid to the name of the row referencing it."""

    owners: Dict[str, str] = {}
    for row in runner.rows(table, ["name", column]):
        for child in as_list(row[column]):
            owners[child] = row["name"]
    return owners


def _optional_column(value: Any) -> str:
    if not value:
        return "[]"
    return quote(value)


class _Table(abc.ABC):
    def __init__(self, runner: ToolRunner) -> None:
        self.runner = runner

    @abc.abstractmethod
    def read(self, key: str) -> Optional[Fields]:
        """Return the canonical fields of the row named ``key``."""

    @abc.abstractmethod
    def list(self) -> Dict[str, Fields]:
        """Return every row of the table keyed by entity key."""

    @abc.abstractmethod
    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        """Create the row or update the columns that differ from ``current``."""

    @abc.abstractmethod
    def remove(self, key: str, current: Fields) -> None:
        """Delete the row."""


class _SwitchTable(_Table):
    COLUMNS = ["name", "other_config", "external_ids"]

    @staticmethod
    def _fields(row: Dict[str, Any]) -> Fields:
        return canonical({"other_config": row["other_config"], "external_ids": row["external_ids"]})

    def read(self, key: str) -> Optional[Fields]:
        row = _named(self.runner, "Logical_Switch", self.COLUMNS, key)
        return self._fields(row) if row else None

    def list(self) -> Dict[str, Fields]:
        return {
            row["name"]: self._fields(row)
            for row in self.runner.rows("Logical_Switch", self.COLUMNS)
        }

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        self.runner.run(
            [
                "--may-exist", "ls-add", key,
                "--", "set", "Logical_Switch", key,
                f"other_config={encode_map(fields['other_config'])}",
                f"external_ids={encode_map(fields['external_ids'])}",
            ]
        )

    def remove(self, key: str, current: Fields) -> None:
        self.runner.run(["--if-exists", "ls-del", key])


class _SwitchPortTable(_Table):
    COLUMNS = ["_uuid", "name", "type", "addresses", "port_security", "options", "external_ids"]

    @staticmethod
    def _fields(row: Dict[str, Any], switch: str) -> Fields:
        return canonical(
            {
                "switch": switch,
                "type": row["type"],
                "addresses": as_list(row["addresses"]),
                "port_security": as_list(row["port_security"]),
                "options": row["options"],
                "external_ids": row["external_ids"],
            }
        )

    def read(self, key: str) -> Optional[Fields]:
        row = _named(self.runner, "Logical_Switch_Port", self.COLUMNS, key)
        if row is None:
            return None
        owners = _parents(self.runner, "Logical_Switch", "ports")
        return self._fields(row, owners.get(row["_uuid"], ""))

    def list(self) -> Dict[str, Fields]:
        owners = _parents(self.runner, "Logical_Switch", "ports")
        return {
            row["name"]: self._fields(row, owners.get(row["_uuid"], ""))
            for row in self.runner.rows("Logical_Switch_Port", self.COLUMNS)
        }

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        args: List[str] = []
        if current is None or current["switch"] != fields["switch"]:
            args += ["--if-exists", "lsp-del", key, "--", "lsp-add", fields["switch"], key, "--"]
        args += [
            "set", "Logical_Switch_Port", key,
            f"type={quote(fields['type'])}",
            f"addresses={encode_set(fields['addresses'])}",
            f"port_security={encode_set(fields['port_security'])}",
            f"options={encode_map(fields['options'])}",
            f"external_ids={encode_map(fields['external_ids'])}",
        ]
        self.runner.run(args)

    def remove(self, key: str, current: Fields) -> None:
        self.runner.run(["--if-exists", "lsp-del", key])


class _RouterTable(_Table):
    COLUMNS = ["name", "options", "external_ids"]

    @staticmethod
    def _fields(row: Dict[str, Any]) -> Fields:
        return canonical({"options": row["options"], "external_ids": row["external_ids"]})

    def read(self, key: str) -> Optional[Fields]:
        row = _named(self.runner, "Logical_Router", self.COLUMNS, key)
        return self._fields(row) if row else None

    def list(self) -> Dict[str, Fields]:
        return {
            row["name"]: self._fields(row)
            for row in self.runner.rows("Logical_Router", self.COLUMNS)
        }

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        self.runner.run(
            [
                "--may-exist", "lr-add", key,
                "--", "set", "Logical_Router", key,
                f"options={encode_map(fields['options'])}",
                f"external_ids={encode_map(fields['external_ids'])}",
            ]
        )

    def remove(self, key: str, current: Fields) -> None:
        self.runner.run(["--if-exists", "lr-del", key])


class _RouterPortTable(_Table):
    COLUMNS = ["_uuid", "name", "mac", "networks", "peer", "external_ids"]

    @staticmethod
    def _fields(row: Dict[str, Any], router: str) -> Fields:
        return canonical(
            {
                "router": router,
                "mac": row["mac"],
                "networks": as_list(row["networks"]),
                "peer": as_optional(row["peer"]),
                "external_ids": row["external_ids"],
            }
        )

    def read(self, key: str) -> Optional[Fields]:
        row = _named(self.runner, "Logical_Router_Port", self.COLUMNS, key)
        if row is None:
            return None
        owners = _parents(self.runner, "Logical_Router", "ports")
        return self._fields(row, owners.get(row["_uuid"], ""))

    def list(self) -> Dict[str, Fields]:
        owners = _parents(self.runner, "Logical_Router", "ports")
        return {
            row["name"]: self._fields(row, owners.get(row["_uuid"], ""))
            for row in self.runner.rows("Logical_Router_Port", self.COLUMNS)
        }

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        args: List[str] = []
        # lrp-add refuses to touch an existing port with different settings,
        # so existing ports on the right router are only updated in place.
        if current is None or current["router"] != fields["router"]:
            args += [
                "--if-exists", "lrp-del", key,
                "--", "lrp-add", fields["router"], key, fields["mac"], *fields["networks"],
                "--",
            ]
        args += [
            "set", "Logical_Router_Port", key,
            f"mac={quote(fields['mac'])}",
            f"networks={encode_set(fields['networks'])}",
            f"peer={_optional_column(fields['peer'])}",
            f"external_ids={encode_map(fields['external_ids'])}",
        ]
        self.runner.run(args)

    def remove(self, key: str, current: Fields) -> None:
        self.runner.run(["--if-exists", "lrp-del", key])


class _RouterChildTable(_Table):
    """Rows referenced from a ``Logical_Router`` column and keyed by content."""

    TABLE = ""
    PARENT_COLUMN = ""
    COLUMNS: List[str] = []

    @abc.abstractmethod
    def _key(self, router: str, row: Dict[str, Any]) -> str:
        """Entity key of ``row`` hanging off ``router``."""

    @abc.abstractmethod
    def _fields(self, router: str, row: Dict[str, Any]) -> Fields:
        """Canonical fields of ``row``."""

    @abc.abstractmethod
    def _create_args(self, fields: Fields) -> List[str]:
        """ovn-nbctl arguments that create the row."""

    @abc.abstractmethod
    def _update_args(self, fields: Fields) -> List[str]:
        """ovn-nbctl arguments that replace the row."""

    def _rows(self, router: Optional[str] = None) -> Dict[str, Tuple[str, Fields]]:
        conditions = [f"name={quote(router)}"] if router else []
        routers = self.runner.rows("Logical_Router", ["name", self.PARENT_COLUMN], conditions)
        owners: Dict[str, str] = {}
        for row in routers:
            for child in as_list(row[self.PARENT_COLUMN]):
                owners[child] = row["name"]
        if not owners:
            return {}
        found: Dict[str, Tuple[str, Fields]] = {}
        for row in self.runner.rows(self.TABLE, ["_uuid", *self.COLUMNS]):
            owner = owners.get(row["_uuid"])
            if owner is not None:
                found[self._key(owner, row)] = (row["_uuid"], self._fields(owner, row))
        return found

    @staticmethod
    def _router_of(key: str) -> str:
        return key.split("|", 1)[0]

    def read(self, key: str) -> Optional[Fields]:
        entry = self._rows(self._router_of(key)).get(key)
        return entry[1] if entry else None

    def list(self) -> Dict[str, Fields]:
        return {key: fields for key, (_, fields) in self._rows().items()}

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        entry = self._rows(fields["router"]).get(key) if current is not None else None
        if entry is not None:
            self.runner.run(["set", self.TABLE, entry[0], *self._update_args(fields)])
            return
        self.runner.run(
            [
                "--", "--id=@row", "create", self.TABLE, *self._create_args(fields),
                "--", "add", "Logical_Router", fields["router"], self.PARENT_COLUMN, "@row",
            ]
        )

    def remove(self, key: str, current: Fields) -> None:
        entry = self._rows(current["router"]).get(key)
        if entry is None:
            return
        self.runner.run(
            ["remove", "Logical_Router", current["router"], self.PARENT_COLUMN, entry[0]]
        )


class _StaticRouteTable(_RouterChildTable):
    TABLE = "Logical_Router_Static_Route"
    PARENT_COLUMN = "static_routes"
    COLUMNS = ["ip_prefix", "nexthop", "policy", "external_ids"]

    def _key(self, router: str, row: Dict[str, Any]) -> str:
        return route_key(router, row["ip_prefix"], as_optional(row["policy"]) or "dst-ip")

    def _fields(self, router: str, row: Dict[str, Any]) -> Fields:
        return canonical(
            {
                "router": router,
                "ip_prefix": row["ip_prefix"],
                "nexthop": row["nexthop"],
                "policy": as_optional(row["policy"]) or "dst-ip",
                "external_ids": row["external_ids"],
            }
        )

    def _create_args(self, fields: Fields) -> List[str]:
        return [
            f"ip_prefix={quote(fields['ip_prefix'])}",
            f"policy={quote(fields['policy'])}",
            *self._update_args(fields),
        ]

    def _update_args(self, fields: Fields) -> List[str]:
        return [
            f"nexthop={quote(fields['nexthop'])}",
            f"external_ids={encode_map(fields['external_ids'])}",
        ]


class _NatTable(_RouterChildTable):
    TABLE = "NAT"
    PARENT_COLUMN = "nat"
    COLUMNS = ["type", "logical_ip", "external_ip", "external_ids"]

    def _key(self, router: str, row: Dict[str, Any]) -> str:
        return nat_key(router, row["type"], row["logical_ip"])

    def _fields(self, router: str, row: Dict[str, Any]) -> Fields:
        return canonical(
            {
                "router": router,
                "type": row["type"],
                "logical_ip": row["logical_ip"],
                "external_ip": row["external_ip"],
                "external_ids": row["external_ids"],
            }
        )

    def _create_args(self, fields: Fields) -> List[str]:
        return [
            f"type={quote(fields['type'])}",
            f"logical_ip={quote(fields['logical_ip'])}",
            *self._update_args(fields),
        ]

    def _update_args(self, fields: Fields) -> List[str]:
        return [
            f"external_ip={quote(fields['external_ip'])}",
            f"external_ids={encode_map(fields['external_ids'])}",
        ]


class _LoadBalancerTable(_Table):
    COLUMNS = ["_uuid", "name", "protocol", "external_ids"]

    @staticmethod
    def _fields(row: Dict[str, Any]) -> Fields:
        return canonical(
            {
                "protocol": as_optional(row["protocol"]) or "tcp",
                "external_ids": row["external_ids"],
            }
        )

    def read(self, key: str) -> Optional[Fields]:
        row = _named(self.runner, "Load_Balancer", self.COLUMNS, key)
        return self._fields(row) if row else None

    def list(self) -> Dict[str, Fields]:
        return {
            row["name"]: self._fields(row)
            for row in self.runner.rows("Load_Balancer", self.COLUMNS)
        }

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        settings = [
            f"protocol={quote(fields['protocol'])}",
            f"external_ids={encode_map(fields['external_ids'])}",
        ]
        row = _named(self.runner, "Load_Balancer", ["_uuid"], key) if current else None
        if row is not None:
            self.runner.run(["set", "Load_Balancer", row["_uuid"], *settings])
        else:
            self.runner.run(["create", "Load_Balancer", f"name={quote(key)}", *settings])

    def remove(self, key: str, current: Fields) -> None:
        self.runner.run(["--if-exists", "lb-del", key])


def _load_balancer_uuid(runner: ToolRunner, name: str) -> str:
    row = _named(runner, "Load_Balancer", ["_uuid"], name)
    if row is None:
        raise NotReadyError(f"load balancer {name} does not exist yet")
    return row["_uuid"]


class _LoadBalancerVipTable(_Table):
    def read(self, key: str) -> Optional[Fields]:
        name, _, vip = key.partition("|")
        row = _named(self.runner, "Load_Balancer", ["name", "vips"], name)
        if row is None or vip not in row["vips"]:
            return None
        return canonical({"load_balancer": name, "vip": vip, "backends": row["vips"][vip]})

    def list(self) -> Dict[str, Fields]:
        found: Dict[str, Fields] = {}
        for row in self.runner.rows("Load_Balancer", ["name", "vips"]):
            for vip, backends in row["vips"].items():
                found[vip_key(row["name"], vip)] = canonical(
                    {"load_balancer": row["name"], "vip": vip, "backends": backends}
                )
        return found

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        uuid = _load_balancer_uuid(self.runner, fields["load_balancer"])
        self.runner.run(
            [
                "set", "Load_Balancer", uuid,
                f"vips:{quote(fields['vip'])}={quote(fields['backends'])}",
            ]
        )

    def remove(self, key: str, current: Fields) -> None:
        uuid = _load_balancer_uuid(self.runner, current["load_balancer"])
        self.runner.run(["remove", "Load_Balancer", uuid, "vips", quote(current["vip"])])


class _LoadBalancerBindingTable(_Table):
    TARGETS = {"switch": ("Logical_Switch", "ls"), "router": ("Logical_Router", "lr")}

    def _bindings(self, name: Optional[str] = None) -> Dict[str, Fields]:
        conditions = [f"name={quote(name)}"] if name else []
        balancers = {
            row["_uuid"]: row["name"]
            for row in self.runner.rows("Load_Balancer", ["_uuid", "name"], conditions)
        }
        found: Dict[str, Fields] = {}
        if not balancers:
            return found
        for target_type, (table, _) in self.TARGETS.items():
            for row in self.runner.rows(table, ["name", "load_balancer"]):
                for uuid in as_list(row["load_balancer"]):
                    balancer = balancers.get(uuid)
                    if balancer is None:
                        continue
                    found[binding_key(balancer, target_type, row["name"])] = canonical(
                        {
                            "load_balancer": balancer,
                            "target_type": target_type,
                            "target": row["name"],
                        }
                    )
        return found

    def read(self, key: str) -> Optional[Fields]:
        return self._bindings(key.split("@", 1)[0]).get(key)

    def list(self) -> Dict[str, Fields]:
        return self._bindings()

    def write(self, key: str, fields: Fields, current: Optional[Fields]) -> None:
        _, prefix = self.TARGETS[fields["target_type"]]
        self.runner.run(
            ["--may-exist", f"{prefix}-lb-add", fields["target"], fields["load_balancer"]]
        )

    def remove(self, key: str, current: Fields) -> None:
        _, prefix = self.TARGETS[current["target_type"]]
        self.runner.run(
            ["--if-exists", f"{prefix}-lb-del", current["target"], current["load_balancer"]]
        )


class NbctlBackend(NorthboundBackend):
    """Backend implemented with ``ovn-nbctl`` invocations."""

    def __init__(self, runner: ToolRunner) -> None:
        self._tables: Dict[Kind, _Table] = {
            Kind.SWITCH: _SwitchTable(runner),
            Kind.SWITCH_PORT: _SwitchPortTable(runner),
            Kind.ROUTER: _RouterTable(runner),
            Kind.ROUTER_PORT: _RouterPortTable(runner),
            Kind.STATIC_ROUTE: _StaticRouteTable(runner),
            Kind.NAT: _NatTable(runner),
            Kind.LOAD_BALANCER: _LoadBalancerTable(runner),
            Kind.LOAD_BALANCER_VIP: _LoadBalancerVipTable(runner),
            Kind.LOAD_BALANCER_BINDING: _LoadBalancerBindingTable(runner),
        }

    def read(self, kind: Kind, key: str) -> Optional[Fields]:
        return self._tables[kind].read(key)

    def write(self, kind: Kind, key: str, fields: Fields, current: Optional[Fields]) -> None:
        self._tables[kind].write(key, fields, current)

    def remove(self, kind: Kind, key: str, current: Fields) -> None:
        self._tables[kind].remove(key, current)

    def list(self, kind: Kind) -> Dict[str, Fields]:
        return self._tables[kind].list()
