"""Command line and config file handling for the ovnkube agent.

Options are registered with oslo.config: the command line flags live in the
``DEFAULT`` group and every section of the INI file has its own group.  All
options default to ``None`` so the loader can tell which source set a value
and merge them with the documented precedence::

    built-in defaults < OVS external_ids < config file < command line
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from oslo_config import cfg

from ovnkube.config import (
    GatewayOptions,
    TopologyConfig,
    parse_cluster_subnets,
    parse_services_subnet,
)
from ovnkube.exceptions import ConfigError, DBError
from ovnkube.nbctl import ToolRunner

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/etc/openvswitch/ovn_k8s.conf"

DEFAULTS: Dict[str, object] = {
    "cluster_subnet": "11.11.0.0/16",
    "mtu": 1400,
    "conntrack_zone": 64000,
    "encap_type": "geneve",
    "inactivity_probe": 100000,
    "loglevel": 4,
    "cni_conf_dir": "/etc/cni/net.d",
    "cni_plugin": "ovn-k8s-cni-overlay",
    "k8s_apiserver": "http://localhost:8080",
}

SCHEMES = ("tcp", "ssl", "unix")

cli_opts = [
    cfg.StrOpt("cluster-subnet",
               help="Cluster wide IP subnets as CIDR[/hostlen] entries, "
                    "comma separated. Host subnets default to /24."),
    cfg.StrOpt("service-cluster-ip-range",
               help="CIDR the orchestrator assigns service virtual IPs from."),
    cfg.StrOpt("init-master",
               help="Run the master reconcilers; the value is the master "
                    "host name."),
    cfg.StrOpt("init-node",
               help="Run the node agent for the named node."),
    cfg.BoolOpt("net-controller", default=False,
                help="Run only the cluster network controller."),
    cfg.BoolOpt("nodeport", default=False,
                help="Program NodePort load balancers on gateway routers."),
    cfg.BoolOpt("init-gateways", default=False,
                help="Make this node a gateway (requires --init-node)."),
    cfg.StrOpt("gateway-interface",
               help="Interface that connects to the external network."),
    cfg.StrOpt("gateway-nexthop",
               help="Next hop of the external network."),
    cfg.BoolOpt("gateway-spare-interface", default=False,
                help="The gateway interface is dedicated to the gateway."),
    cfg.BoolOpt("gateway-local", default=False,
                help="Use a host-local gateway instead of a physical uplink."),
    cfg.IntOpt("gateway-vlanid", default=0,
               help="VLAN tag of the external network."),
    cfg.BoolOpt("ha", default=False,
                help="Databases run replicated behind the configured "
                     "addresses."),
    cfg.StrOpt("pidfile", help="Write the process id to this file."),
    cfg.StrOpt("nb-address",
               help="Northbound database address, e.g. ssl:1.2.3.4:6641."),
    cfg.StrOpt("nb-client-privkey", help="Northbound client private key."),
    cfg.StrOpt("nb-client-cert", help="Northbound client certificate."),
    cfg.StrOpt("nb-client-cacert", help="Northbound CA certificate."),
    cfg.StrOpt("sb-address",
               help="Southbound database address, e.g. ssl:1.2.3.4:6642."),
    cfg.StrOpt("sb-client-privkey", help="Southbound client private key."),
    cfg.StrOpt("sb-client-cert", help="Southbound client certificate."),
    cfg.StrOpt("sb-client-cacert", help="Southbound CA certificate."),
    cfg.StrOpt("k8s-apiserver", help="Kubernetes API server URL."),
    cfg.StrOpt("k8s-cacert", help="Kubernetes API server CA certificate."),
    cfg.StrOpt("k8s-token", secret=True, help="Kubernetes bearer token."),
    cfg.StrOpt("k8s-kubeconfig", help="Path to a kubeconfig file."),
    cfg.IntOpt("mtu", help="MTU of the overlay network."),
    cfg.IntOpt("conntrack-zone", help="Conntrack zone of the host gateway."),
    cfg.StrOpt("encap-type", help="Tunnel encapsulation type."),
    cfg.StrOpt("encap-ip", help="Tunnel endpoint address of this node."),
    cfg.IntOpt("inactivity-probe-ms",
               help="OVSDB inactivity probe interval in milliseconds."),
    cfg.IntOpt("loglevel", help="Log verbosity, 5 (debug) to 1 (critical)."),
    cfg.StrOpt("logfile", help="Log to this file instead of stderr."),
]

file_opts = {
    "default": [
        cfg.IntOpt("mtu"),
        cfg.IntOpt("conntrack_zone"),
        cfg.StrOpt("encap_type"),
        cfg.StrOpt("encap_ip"),
        cfg.IntOpt("inactivity_probe"),
    ],
    "logging": [
        cfg.StrOpt("logfile"),
        cfg.IntOpt("loglevel"),
    ],
    "cni": [
        cfg.StrOpt("conf_dir"),
        cfg.StrOpt("plugin"),
    ],
    "kubernetes": [
        cfg.StrOpt("kubeconfig"),
        cfg.StrOpt("apiserver"),
        cfg.StrOpt("cacert"),
        cfg.StrOpt("token", secret=True),
    ],
    "ovnnorth": [
        cfg.StrOpt("address"),
        cfg.StrOpt("client_privkey"),
        cfg.StrOpt("client_cert"),
        cfg.StrOpt("client_cacert"),
    ],
    "ovnsouth": [
        cfg.StrOpt("address"),
        cfg.StrOpt("client_privkey"),
        cfg.StrOpt("client_cert"),
        cfg.StrOpt("client_cacert"),
    ],
}


def register_opts(conf: cfg.ConfigOpts) -> None:
    conf.register_cli_opts(cli_opts)
    for group, opts in file_opts.items():
        conf.register_opts(opts, group=group)


# ----------------------------------------------------------------------
# Database addresses
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class OvnDBAuth:
    """Connection description of one OVN database.

    Attributes
    ----------
    direction:
        ``nb`` or ``sb``.
    scheme:
        ``tcp``, ``ssl`` or ``unix``.  An empty address means the local unix
        socket the tools use by default.
    address:
        Normalised client address list, ``scheme:host:port[,...]``.
    """

    direction: str
    scheme: str = "unix"
    address: str = ""
    private_key: Optional[str] = None
    certificate: Optional[str] = None
    ca_cert: Optional[str] = None

    @property
    def external_id(self) -> str:
        return "ovn-nb" if self.direction == "nb" else "ovn-remote"

    def ctl_args(self) -> List[str]:
        """Leading arguments for ``ovn-nbctl``/``ovn-sbctl``."""

        args: List[str] = []
        if self.address:
            args.append(f"--db={self.address}")
        if self.scheme == "ssl":
            args += [
                f"--private-key={self.private_key}",
                f"--certificate={self.certificate}",
                f"--bootstrap-ca-cert={self.ca_cert}",
            ]
        return args


def _field(direction: str, name: str) -> str:
    return f"{direction}-{name}"


def parse_db_address(direction: str, value: str) -> tuple:
    """Validate ``value`` and return ``(scheme, normalised address)``."""

    option = _field(direction, "address")
    scheme = ""
    normalised: List[str] = []
    for raw in value.split(","):
        raw = raw.strip().replace("//", "")
        parts = raw.split(":", 1)
        if len(parts) != 2 or not parts[1]:
            raise ConfigError(option, f"failed to parse OVN address {value!r}")
        entry_scheme, rest = parts
        if entry_scheme not in SCHEMES:
            raise ConfigError(option, f"unknown OVN DB scheme {entry_scheme!r}")
        if scheme and entry_scheme != scheme:
            raise ConfigError(option, f"mixed schemes in OVN address {value!r}")
        scheme = entry_scheme

        if scheme == "unix":
            normalised.append(f"unix:{rest}")
            continue

        host, sep, port = rest.rpartition(":")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise ConfigError(option, f"failed to parse OVN DB host/port {rest!r}")
        try:
            ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            raise ConfigError(
                option, f"OVN DB host {host!r} must be an IP address, not a DNS name"
            ) from None
        normalised.append(f"{scheme}:{host}:{port}")
    return scheme, ",".join(normalised)


def build_db_auth(
    direction: str,
    address: Optional[str],
    private_key: Optional[str] = None,
    certificate: Optional[str] = None,
    ca_cert: Optional[str] = None,
    *,
    exists: Callable[[str], bool] = os.path.exists,
) -> OvnDBAuth:
    given_keys = any((private_key, certificate, ca_cert))
    if not address:
        if given_keys:
            raise ConfigError(
                _field(direction, "client-privkey"),
                "certificate or key given; perhaps you mean to use the 'ssl' scheme?",
            )
        return OvnDBAuth(direction=direction)

    scheme, normalised = parse_db_address(direction, address)
    if scheme != "ssl":
        if given_keys:
            raise ConfigError(
                _field(direction, "client-privkey"),
                "certificate or key given; perhaps you mean to use the 'ssl' scheme?",
            )
        return OvnDBAuth(direction=direction, scheme=scheme, address=normalised)

    base = f"/etc/openvswitch/ovn{direction}"
    private_key = private_key or f"{base}-privkey.pem"
    certificate = certificate or f"{base}-cert.pem"
    ca_cert = ca_cert or f"{base}-ca.cert"
    if not exists(private_key):
        raise ConfigError(
            _field(direction, "client-privkey"), f"private key file {private_key} not found"
        )
    if not exists(certificate):
        raise ConfigError(
            _field(direction, "client-cert"), f"certificate file {certificate} not found"
        )
    return OvnDBAuth(
        direction=direction,
        scheme=scheme,
        address=normalised,
        private_key=private_key,
        certificate=certificate,
        ca_cert=ca_cert,
    )


def set_db_auth(auth: OvnDBAuth, vsctl, nbctl: Optional[ToolRunner] = None) -> None:
    """Mirror ``auth`` into the local OVS external_ids."""

    if not auth.address:
        return
    if auth.scheme == "ssl":
        if nbctl is not None and not os.path.exists(auth.ca_cert):
            # The CA can be bootstrapped from the database itself.
            try:
                nbctl.run([*auth.ctl_args(), "--timeout=5", "list", "NB_Global"], read_only=True)
            except DBError as exc:
                LOG.warning("Bootstrapping CA certificate %s failed: %s", auth.ca_cert, exc)
        if auth.direction == "sb":
            vsctl.set_ssl(auth.private_key, auth.certificate, auth.ca_cert)
    vsctl.set_external_ids({auth.external_id: auth.address})


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class KubernetesSettings:
    apiserver: str
    kubeconfig: Optional[str] = None
    cacert: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class CNISettings:
    conf_dir: str
    plugin: str


@dataclass(frozen=True)
class AgentSettings:
    """Fully merged and validated configuration."""

    topology: TopologyConfig
    gateway: GatewayOptions
    nb: OvnDBAuth
    sb: OvnDBAuth
    kubernetes: KubernetesSettings
    cni: CNISettings
    init_master: Optional[str] = None
    init_node: Optional[str] = None
    net_controller: bool = False
    ha: bool = False
    pidfile: Optional[str] = None
    mtu: int = 1400
    conntrack_zone: int = 64000
    encap_type: str = "geneve"
    encap_ip: Optional[str] = None
    inactivity_probe: int = 100000
    loglevel: int = 4
    logfile: Optional[str] = None
    config_file: Optional[str] = None


def _first(*values):
    for value in values:
        if value is not None and value != "":
            return value
    return None


def discover_external_ids(vsctl) -> Dict[str, str]:
    """Read the connection hints an installer may have left in OVS."""

    found: Dict[str, str] = {}
    if vsctl is None:
        return found
    for key in ("ovn-nb", "ovn-remote", "k8s-api-server", "k8s-api-token", "k8s-ca-certificate"):
        try:
            value = vsctl.get_external_id(key)
        except DBError as exc:
            LOG.debug("Cannot read external_ids:%s from OVS: %s", key, exc)
            return found
        if value:
            found[key] = value
    return found


def parse_args(argv: Sequence[str], conf: Optional[cfg.ConfigOpts] = None) -> cfg.ConfigOpts:
    """Register the options on a fresh ``ConfigOpts`` and parse ``argv``."""

    conf = conf or cfg.ConfigOpts()
    register_opts(conf)
    default_files = [DEFAULT_CONFIG_FILE] if os.path.exists(DEFAULT_CONFIG_FILE) else []
    try:
        conf(args=list(argv), project="ovnkube", default_config_files=default_files)
    except cfg.ConfigFilesNotFoundError as exc:
        raise ConfigError("config-file", str(exc)) from None
    except cfg.Error as exc:
        raise ConfigError("config-file", str(exc)) from None
    return conf


def build_settings(
    conf: cfg.ConfigOpts,
    vsctl=None,
    *,
    exists: Callable[[str], bool] = os.path.exists,
) -> AgentSettings:
    """Merge every configuration source and validate the result."""

    try:
        settings = _merge(conf, discover_external_ids(vsctl), exists)
    except cfg.Error as exc:
        # Malformed values in the config file surface on first access.
        raise ConfigError("config-file", str(exc)) from None
    LOG.debug("Effective configuration: %s", settings)
    return settings


def _merge(
    conf: cfg.ConfigOpts,
    discovered: Dict[str, str],
    exists: Callable[[str], bool],
) -> AgentSettings:
    north = conf.ovnnorth
    south = conf.ovnsouth
    file_default = conf.default
    file_logging = conf.logging
    file_cni = conf.cni
    file_k8s = conf.kubernetes
    cli = {
        "mtu": conf.mtu,
        "conntrack_zone": conf.conntrack_zone,
        "inactivity_probe": conf.inactivity_probe_ms,
        "loglevel": conf.loglevel,
        "vlan": conf.gateway_vlanid,
    }

    topology_entries = parse_cluster_subnets(
        _first(conf.cluster_subnet, DEFAULTS["cluster_subnet"])
    )
    topology = TopologyConfig(
        cluster_subnets=topology_entries,
        services_subnet=parse_services_subnet(conf.service_cluster_ip_range, topology_entries),
        nodeport=conf.nodeport,
    )

    gateway = GatewayOptions(
        enabled=conf.init_gateways,
        interface=conf.gateway_interface,
        nexthop=conf.gateway_nexthop,
        spare_interface=conf.gateway_spare_interface,
        local=conf.gateway_local,
        vlan_id=cli["vlan"],
    )
    gateway.validate(conf.init_node)

    encap_type = _first(conf.encap_type, file_default.encap_type, DEFAULTS["encap_type"])
    if encap_type != "geneve":
        raise ConfigError("encap-type", f"unsupported encapsulation {encap_type!r}")

    loglevel = _first(cli["loglevel"], file_logging.loglevel, DEFAULTS["loglevel"])
    if not 1 <= loglevel <= 5:
        raise ConfigError("loglevel", f"{loglevel} is not between 1 and 5")

    kubernetes = KubernetesSettings(
        apiserver=_first(
            conf.k8s_apiserver, file_k8s.apiserver,
            discovered.get("k8s-api-server"), DEFAULTS["k8s_apiserver"],
        ),
        kubeconfig=_first(conf.k8s_kubeconfig, file_k8s.kubeconfig),
        cacert=_first(conf.k8s_cacert, file_k8s.cacert, discovered.get("k8s-ca-certificate")),
        token=_first(conf.k8s_token, file_k8s.token, discovered.get("k8s-api-token")),
    )
    if kubernetes.kubeconfig and not exists(kubernetes.kubeconfig):
        raise ConfigError(
            "k8s-kubeconfig", f"kubernetes kubeconfig file {kubernetes.kubeconfig!r} not found"
        )
    if kubernetes.cacert and not exists(kubernetes.cacert):
        raise ConfigError(
            "k8s-cacert", f"kubernetes CA certificate file {kubernetes.cacert!r} not found"
        )
    if urlparse(kubernetes.apiserver).scheme not in ("http", "https"):
        raise ConfigError(
            "k8s-apiserver", f"kubernetes API server URL {kubernetes.apiserver!r} invalid"
        )

    nb = build_db_auth(
        "nb",
        _first(conf.nb_address, north.address, discovered.get("ovn-nb")),
        _first(conf.nb_client_privkey, north.client_privkey),
        _first(conf.nb_client_cert, north.client_cert),
        _first(conf.nb_client_cacert, north.client_cacert),
        exists=exists,
    )
    sb = build_db_auth(
        "sb",
        _first(conf.sb_address, south.address, discovered.get("ovn-remote")),
        _first(conf.sb_client_privkey, south.client_privkey),
        _first(conf.sb_client_cert, south.client_cert),
        _first(conf.sb_client_cacert, south.client_cacert),
        exists=exists,
    )

    return AgentSettings(
        topology=topology,
        gateway=gateway,
        nb=nb,
        sb=sb,
        kubernetes=kubernetes,
        cni=CNISettings(
            conf_dir=_first(file_cni.conf_dir, DEFAULTS["cni_conf_dir"]),
            plugin=_first(file_cni.plugin, DEFAULTS["cni_plugin"]),
        ),
        init_master=conf.init_master,
        init_node=conf.init_node,
        net_controller=conf.net_controller,
        ha=conf.ha,
        pidfile=conf.pidfile,
        mtu=_first(cli["mtu"], file_default.mtu, DEFAULTS["mtu"]),
        conntrack_zone=_first(
            cli["conntrack_zone"], file_default.conntrack_zone, DEFAULTS["conntrack_zone"]
        ),
        encap_type=encap_type,
        encap_ip=_first(conf.encap_ip, file_default.encap_ip),
        inactivity_probe=_first(
            cli["inactivity_probe"], file_default.inactivity_probe, DEFAULTS["inactivity_probe"]
        ),
        loglevel=loglevel,
        logfile=_first(conf.logfile, file_logging.logfile),
        config_file=conf.config_file[-1] if conf.config_file else None,
    )


def load(argv: Sequence[str], vsctl=None) -> AgentSettings:
    return build_settings(parse_args(argv), vsctl)
