"""Helpers around ``ovs-vsctl`` for the local Open vSwitch database."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from ovnkube.nbctl import ToolRunner, quote

LOG = logging.getLogger(__name__)

INTEGRATION_BRIDGE = "br-int"


class OvsVsctl:
    """The handful of ``ovs-vsctl`` operations the agent needs."""

    def __init__(self, runner: Optional[ToolRunner] = None) -> None:
        self._runner = runner or ToolRunner("ovs-vsctl")

    def get_external_id(self, key: str) -> Optional[str]:
        output = self._runner.run(
            ["--if-exists", "get", "Open_vSwitch", ".", f"external_ids:{key}"],
            read_only=True,
        ).strip()
        if not output:
            return None
        # Values come back in OVSDB string notation.
        if output.startswith('"') and output.endswith('"'):
            output = output[1:-1].replace('\\"', '"')
        return output or None

    def set_external_ids(self, values: Mapping[str, str]) -> None:
        if not values:
            return
        args = ["set", "Open_vSwitch", "."]
        args += [f"external_ids:{key}={quote(value)}" for key, value in sorted(values.items())]
        self._runner.run(args)

    def set_ssl(self, private_key: str, certificate: str, ca_cert: str) -> None:
        self._runner.run(["del-ssl"])
        self._runner.run(["set-ssl", private_key, certificate, ca_cert])

    def add_internal_port(
        self,
        name: str,
        iface_id: str,
        *,
        bridge: str = INTEGRATION_BRIDGE,
        mac: Optional[str] = None,
        mtu: Optional[int] = None,
    ) -> None:
        settings = ["type=internal", f"external-ids:iface-id={quote(iface_id)}"]
        if mac:
            settings.append(f"mac={quote(mac)}")
        if mtu:
            settings.append(f"mtu_request={mtu}")
        self._runner.run(
            [
                "--", "--may-exist", "add-port", bridge, name,
                "--", "set", "Interface", name, *settings,
            ]
        )

    def add_bridge(self, name: str) -> None:
        self._runner.run(["--may-exist", "add-br", name])
