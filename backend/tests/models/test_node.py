"""
Tests for the DiscoveryNode, Target and KeyValue models.

Exercises the in-memory tree helpers (child insertion rules, subtree
walking, serialisation) without a database session.
"""

from __future__ import annotations

import pytest

from jvmscope.models import DiscoveryNode, KeyValue, NodeType, Target


def _node(name: str, node_type: NodeType = NodeType.NAMESPACE, leaf: bool = False) -> DiscoveryNode:
    return DiscoveryNode(name=name, node_type=node_type.value, labels={}, leaf=leaf)


def _leaf(connect_url: str, alias: str = "app") -> DiscoveryNode:
    node = _node(connect_url, NodeType.JVM, leaf=True)
    node.target = Target(
        connect_url=connect_url,
        alias=alias,
        labels={"app": alias},
        annotations={"platform": {}, "cryostat": {"REALM": "Custom Targets"}},
    )
    return node


# ---------------------------------------------------------------------------
# NodeType
# ---------------------------------------------------------------------------


def test_node_type_lookup_is_case_insensitive() -> None:
    """from_kind matches kind strings regardless of case and rejects unknowns."""
    assert NodeType.from_kind("deployment") is NodeType.DEPLOYMENT
    assert NodeType.from_kind("DeploymentConfig") is NodeType.DEPLOYMENTCONFIG
    assert NodeType.from_kind("Unknown") is None
    assert NodeType.from_kind(None) is None
    assert str(NodeType.POD) == "Pod"


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def test_leaf_rejects_children() -> None:
    """A leaf node can never receive a child."""
    leaf = _leaf("service:jmx:rmi:///jndi/rmi://a:9091/jmxrmi")

    with pytest.raises(ValueError, match="cannot have children"):
        leaf.add_child(_node("x"))


def test_sibling_name_and_kind_must_be_unique() -> None:
    """Two children with the same name and kind are refused, different kinds are fine."""
    parent = _node("ns1")
    parent.add_child(_node("app", NodeType.DEPLOYMENT))
    parent.add_child(_node("app", NodeType.STATEFULSET))

    with pytest.raises(ValueError, match="already has"):
        parent.add_child(_node("app", NodeType.DEPLOYMENT))
    assert len(parent.children) == 2


def test_add_child_is_idempotent_for_the_same_object() -> None:
    parent = _node("ns1")
    child = _node("pod-1", NodeType.POD)
    parent.add_child(child)
    parent.add_child(child)

    assert parent.children == [child]


def test_empty_environment_node_is_not_a_leaf() -> None:
    """An environment node with zero children still serialises a children list."""
    namespace = _node("ns1")

    payload = namespace.to_dict()

    assert payload["children"] == []
    assert "target" not in payload
    assert namespace.has_children() is False


def test_subtree_targets_collects_every_leaf() -> None:
    realm = _node("KubernetesApi", NodeType.REALM)
    namespace = _node("ns1")
    pod = _node("pod-1", NodeType.POD)
    realm.add_child(namespace)
    namespace.add_child(pod)
    pod.add_child(_leaf("service:jmx:rmi:///jndi/rmi://a:9091/jmxrmi", "a"))
    namespace.add_child(_leaf("service:jmx:rmi:///jndi/rmi://b:9091/jmxrmi", "b"))

    aliases = sorted(target.alias for target in realm.subtree_targets())

    assert aliases == ["a", "b"]
    assert realm.is_structural and namespace.is_structural
    assert not pod.is_structural


def test_leaf_serialises_target_with_sorted_key_values() -> None:
    leaf = _leaf("https://agent.local:8910/", "agent")

    payload = leaf.to_dict()

    assert "children" not in payload
    target = payload["target"]
    assert target["connectUrl"] == "https://agent.local:8910/"
    assert target["agent"] is True
    assert target["labels"] == [{"key": "app", "value": "agent"}]
    assert target["annotations"]["cryostat"] == [{"key": "REALM", "value": "Custom Targets"}]


def test_target_realm_comes_from_cryostat_annotations() -> None:
    target = Target(
        connect_url="service:jmx:rmi:///jndi/rmi://a:9091/jmxrmi",
        alias="a",
        annotations={"platform": {}, "cryostat": {"REALM": "JDP"}},
    )

    assert target.realm == "JDP"
    assert target.is_agent is False


# ---------------------------------------------------------------------------
# KeyValue
# ---------------------------------------------------------------------------


def test_key_value_list_is_sorted_by_key() -> None:
    pairs = KeyValue.list_from_map({"b": "2", "a": "1"})

    assert pairs == [KeyValue("a", "1"), KeyValue("b", "2")]
    assert KeyValue.map_from_list(pairs) == {"a": "1", "b": "2"}


def test_key_value_rejects_duplicates_and_nulls() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        KeyValue.map_from_list([KeyValue("a", "1"), KeyValue("a", "2")])
    with pytest.raises(ValueError):
        KeyValue("a", None)  # type: ignore[arg-type]
