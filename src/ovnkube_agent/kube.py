"""Kubernetes API access and conversion into :mod:`ovnkube.model` objects."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from ovnkube.exceptions import NotReadyError, UpdateConflict
from ovnkube.model import NetworkPolicy, Node, Pod, Service, ServicePort

from .config import KubernetesSettings

LOG = logging.getLogger(__name__)

NODE = "node"
POD = "pod"
SERVICE = "service"
POLICY = "networkpolicy"


# ----------------------------------------------------------------------
# Converters
# ----------------------------------------------------------------------
def _meta(obj) -> Tuple[Dict[str, str], Dict[str, str], str]:
    metadata = obj.metadata
    return (
        dict(metadata.annotations or {}),
        dict(metadata.labels or {}),
        metadata.resource_version or "",
    )


def node_from_k8s(obj) -> Node:
    annotations, labels, version = _meta(obj)
    return Node(
        name=obj.metadata.name,
        annotations=annotations,
        labels=labels,
        resource_version=version,
    )


def _pod_ready(status) -> bool:
    for condition in (status.conditions or []) if status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def pod_from_k8s(obj) -> Pod:
    annotations, labels, version = _meta(obj)
    spec = obj.spec
    ports: Dict[str, int] = {}
    for container in (spec.containers or []) if spec else []:
        for port in container.ports or []:
            if port.name:
                ports[port.name] = port.container_port
    return Pod(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        node_name=spec.node_name if spec else None,
        labels=labels,
        annotations=annotations,
        ready=_pod_ready(obj.status),
        host_network=bool(spec.host_network) if spec else False,
        phase=(obj.status.phase if obj.status else None) or "Pending",
        container_ports=ports,
        resource_version=version,
    )


def service_from_k8s(obj) -> Service:
    _, _, version = _meta(obj)
    spec = obj.spec
    ports = []
    for port in spec.ports or []:
        target = port.target_port if port.target_port is not None else port.port
        ports.append(
            ServicePort(
                protocol=port.protocol or "TCP",
                port=port.port,
                target_port=target,
                name=port.name or "",
                node_port=port.node_port,
            )
        )
    return Service(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        cluster_ip=spec.cluster_ip,
        type=spec.type or "ClusterIP",
        selector=dict(spec.selector) if spec.selector else None,
        ports=tuple(ports),
        resource_version=version,
    )


def policy_from_k8s(obj) -> NetworkPolicy:
    _, _, version = _meta(obj)
    selector = obj.spec.pod_selector if obj.spec else None
    return NetworkPolicy(
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        pod_selector=dict(selector.match_labels or {}) if selector else {},
        resource_version=version,
    )


CONVERTERS: Mapping[str, Callable[[Any], Any]] = {
    NODE: node_from_k8s,
    POD: pod_from_k8s,
    SERVICE: service_from_k8s,
    POLICY: policy_from_k8s,
}


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
def build_api_client(settings: KubernetesSettings) -> k8s_client.ApiClient:
    if settings.kubeconfig:
        return k8s_config.new_client_from_config(config_file=settings.kubeconfig)

    configuration = k8s_client.Configuration()
    configuration.host = settings.apiserver
    if settings.token:
        configuration.api_key = {"authorization": settings.token}
        configuration.api_key_prefix = {"authorization": "Bearer"}
    if settings.cacert:
        configuration.ssl_ca_cert = settings.cacert
    return k8s_client.ApiClient(configuration)


class KubeClient:
    """The orchestrator operations used by the reconcilers and watchers."""

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._core = k8s_client.CoreV1Api(api_client)
        self._networking = k8s_client.NetworkingV1Api(api_client)

    def list_function(self, kind: str) -> Callable[..., Any]:
        """Return the list call ``kubernetes.watch.Watch`` can stream from."""

        functions = {
            NODE: self._core.list_node,
            POD: self._core.list_pod_for_all_namespaces,
            SERVICE: self._core.list_service_for_all_namespaces,
            POLICY: self._networking.list_network_policy_for_all_namespaces,
        }
        return functions[kind]

    def list(self, kind: str) -> Tuple[List[Any], str]:
        """List every object of ``kind``; return them and the list version."""

        result = self.list_function(kind)()
        convert = CONVERTERS[kind]
        return [convert(item) for item in result.items], result.metadata.resource_version

    def get_node(self, name: str) -> Optional[Node]:
        try:
            return node_from_k8s(self._core.read_node(name))
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get_pod(self, namespace: str, name: str) -> Optional[Pod]:
        try:
            return pod_from_k8s(self._core.read_namespaced_pod(name, namespace))
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def annotate_node(self, node: Node, annotations: Mapping[str, Optional[str]]) -> Node:
        body = self._annotation_patch(node.resource_version, annotations)
        try:
            result = self._core.patch_node(node.name, body)
        except ApiException as exc:
            self._translate(exc, f"node {node.name}")
            raise
        return node_from_k8s(result)

    def annotate_pod(self, pod: Pod, annotations: Mapping[str, Optional[str]]) -> Pod:
        body = self._annotation_patch(pod.resource_version, annotations)
        try:
            result = self._core.patch_namespaced_pod(pod.name, pod.namespace, body)
        except ApiException as exc:
            self._translate(exc, f"pod {pod.key}")
            raise
        return pod_from_k8s(result)

    @staticmethod
    def _annotation_patch(version: str, annotations: Mapping[str, Optional[str]]) -> dict:
        metadata: Dict[str, Any] = {"annotations": dict(annotations)}
        if version:
            # Makes the API server reject the write if the object moved on.
            metadata["resourceVersion"] = version
        return {"metadata": metadata}

    @staticmethod
    def _translate(exc: ApiException, what: str) -> None:
        if exc.status == 409:
            raise UpdateConflict(f"{what} was modified concurrently") from None
        if exc.status == 404:
            raise NotReadyError(f"{what} no longer exists") from None
