import dataclasses

import pytest

from ovnkube.model import Node, Pod
from ovnkube_agent.events import ObjectAdded, ObjectDeleted, ObjectUpdated
from ovnkube_agent.handlers import LoggingHandler, QueueHandler, node_changed, pod_changed
from ovnkube_agent.registry import HandlerRegistry


def test_registry_dispatches_events_by_kind():
    nodes, pods = [], []
    registry = HandlerRegistry()
    registry.register("node", QueueHandler(["node"], nodes.append))
    registry.register("endpoint", QueueHandler(["pod"], pods.append))
    registry.register("policy", LoggingHandler(["networkpolicy"]))

    node = Node(name="n1", resource_version="1")
    pod = Pod(namespace="default", name="p1", resource_version="1")
    registry.handle(ObjectAdded("node", node))
    registry.handle(ObjectAdded("pod", pod))
    registry.handle(ObjectDeleted("pod", pod))

    assert nodes == ["n1"]
    assert pods == ["default/p1", "default/p1"]


def test_updates_are_filtered_by_change_predicate():
    keys = []
    registry = HandlerRegistry()
    registry.register("node", QueueHandler(["node"], keys.append, node_changed))

    old = Node(name="n1", annotations={"a": "1"}, resource_version="1")
    heartbeat = Node(name="n1", annotations={"a": "1"}, resource_version="2")
    annotated = Node(name="n1", annotations={"a": "2"}, resource_version="3")
    registry.handle(ObjectUpdated("node", old, heartbeat))
    registry.handle(ObjectUpdated("node", heartbeat, annotated))

    assert keys == ["n1"]


def test_pod_change_predicate():
    pod = Pod(namespace="default", name="p1", node_name="n1", resource_version="1")
    same = Pod(namespace="default", name="p1", node_name="n1", resource_version="2")

    assert not pod_changed(pod, same)
    for field, value in (
        ("ready", True),
        ("phase", "Running"),
        ("labels", {"app": "web"}),
        ("node_name", "n2"),
        ("container_ports", {"http": 8080}),
    ):
        changed = dataclasses.replace(pod, **{field: value})
        assert pod_changed(pod, changed), field


def test_unregistered_handlers_stop_receiving_events():
    keys = []
    registry = HandlerRegistry()
    registry.register("node", QueueHandler(["node"], keys.append))
    registry.unregister("node")
    registry.unregister("missing")

    registry.handle(ObjectAdded("node", Node(name="n1")))

    assert keys == []


def test_registry_rejects_duplicate_registration():
    registry = HandlerRegistry()
    handler = LoggingHandler(["node"])
    registry.register("node", handler)

    with pytest.raises(ValueError):
        registry.register("node", handler)


def test_registry_rejects_unknown_events():
    with pytest.raises(TypeError):
        HandlerRegistry().handle(object())
