"""
Tests for the reconciliation apply stage.

Each test drives :class:`Reconciler` through ``apply_in_transaction`` against
the in-memory database, then inspects the committed tree and the events the
bus delivered after commit.
"""

from __future__ import annotations

from typing import Optional

import pytest

from jvmscope.core.urls import create_service_url
from jvmscope.engine.observations import NodeSpec, Observation, TargetSpec
from jvmscope.engine.reconcile import Reconciler
from jvmscope.engine.topology import Topology, apply_in_transaction
from jvmscope.models.node import NodeType

REALM = "KubernetesApi"


# ---------------------------------------------------------------------------
# Observation factories
# ---------------------------------------------------------------------------


def _pod_observation(
    ip: str,
    pod: str,
    chain: tuple[tuple[str, NodeType], ...] = (("app", NodeType.DEPLOYMENT), ("app-5d9", NodeType.REPLICASET)),
    labels: Optional[dict[str, str]] = None,
    port: int = 9091,
) -> Observation:
    """An endpoint of *pod* below the owners in *chain* (top first)."""
    target = TargetSpec(
        connect_url=create_service_url(ip, port),
        alias=pod,
        labels=dict(labels or {"app": "app"}),
        cryostat_annotations={"REALM": REALM},
    )
    leaf = NodeSpec.for_target(target, NodeType.ENDPOINT)
    parent: Optional[NodeSpec] = None
    for name, node_type in chain:
        node = NodeSpec(name, node_type)
        if parent is not None:
            parent.add_child(node)
        parent = node
    pod_node = NodeSpec(pod, NodeType.POD)
    if parent is not None:
        parent.add_child(pod_node)
    pod_node.add_child(leaf)
    return Observation(target=target, node=leaf)


def _url(ip: str, port: int = 9091) -> str:
    return create_service_url(ip, port)


def _has_leaf(session, connect_url: str) -> bool:
    target = Topology(session).find_target(connect_url)
    return target is not None and target.discovery_node is not None


@pytest.fixture()
def reconcile(session_factory, bus):
    """Return a coroutine function applying observations to one scope."""

    async def _reconcile(observations, namespace: Optional[str] = "ns1", realm: str = REALM):
        return await apply_in_transaction(
            session_factory,
            bus,
            lambda session: Reconciler(session).apply(
                realm,
                observations,
                namespace=namespace,
                namespace_labels={"discovery.cryostat.io/namespace": namespace} if namespace else None,
            ),
        )

    return _reconcile


# ---------------------------------------------------------------------------
# Attach and merge
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_two_pods_of_one_deployment_share_the_chain(reconcile, recorder, read_tree, child_named) -> None:
    """Both endpoints end up under a single Deployment and ReplicaSet node."""
    result = await reconcile(
        [_pod_observation("10.0.0.1", "app-a"), _pod_observation("10.0.0.2", "app-b")]
    )

    assert sorted(result.found) == [_url("10.0.0.1"), _url("10.0.0.2")]
    assert recorder.kinds() == [("FOUND", _url("10.0.0.1")), ("FOUND", _url("10.0.0.2"))]

    tree = await read_tree()
    namespace = child_named(child_named(tree, REALM, "Realm"), "ns1", "Namespace")
    assert namespace["labels"] == {"discovery.cryostat.io/namespace": "ns1"}
    assert [child["name"] for child in namespace["children"]] == ["app"]
    replica_set = child_named(namespace["children"][0], "app-5d9", "ReplicaSet")
    pods = sorted(child["name"] for child in replica_set["children"])
    assert pods == ["app-a", "app-b"]
    leaf = child_named(replica_set, "app-a", "Pod")["children"][0]
    assert leaf["nodeType"] == "Endpoint"
    assert leaf["target"]["connectUrl"] == _url("10.0.0.1")


@pytest.mark.asyncio
async def test_reconciling_the_same_observation_twice_changes_nothing(reconcile, recorder, read_tree) -> None:
    observations = [_pod_observation("10.0.0.1", "app-a")]
    await reconcile(observations)
    before = await read_tree()
    recorder.clear()

    result = await reconcile([_pod_observation("10.0.0.1", "app-a")])

    assert result.changed is False
    assert recorder.events == []
    assert await read_tree() == before


# ---------------------------------------------------------------------------
# Removal and pruning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_vanished_target_is_lost_and_its_pod_pruned(reconcile, recorder, read_tree, child_named) -> None:
    await reconcile([_pod_observation("10.0.0.1", "app-a"), _pod_observation("10.0.0.2", "app-b")])
    recorder.clear()

    result = await reconcile([_pod_observation("10.0.0.1", "app-a")])

    assert result.lost == [_url("10.0.0.2")]
    assert recorder.kinds() == [("LOST", _url("10.0.0.2"))]
    tree = await read_tree()
    namespace = child_named(child_named(tree, REALM), "ns1")
    replica_set = child_named(child_named(namespace, "app"), "app-5d9")
    assert [child["name"] for child in replica_set["children"]] == ["app-a"]


@pytest.mark.asyncio
async def test_empty_namespace_node_is_kept(reconcile, recorder, read_tree, child_named) -> None:
    """Losing every target prunes owners but never the Namespace node."""
    await reconcile([_pod_observation("10.0.0.1", "app-a")])

    result = await reconcile([])

    assert result.lost == [_url("10.0.0.1")]
    tree = await read_tree()
    namespace = child_named(child_named(tree, REALM, "Realm"), "ns1", "Namespace")
    assert namespace is not None
    assert namespace["children"] == []


@pytest.mark.asyncio
async def test_scopes_are_independent(reconcile, recorder, read_tree, child_named) -> None:
    await reconcile([_pod_observation("10.0.0.1", "app-a")], namespace="ns1")
    await reconcile([_pod_observation("10.1.0.1", "web-a")], namespace="ns2")

    await reconcile([], namespace="ns2")

    tree = await read_tree()
    realm = child_named(tree, REALM)
    assert child_named(realm, "ns1")["children"] != []
    assert child_named(realm, "ns2")["children"] == []


# ---------------------------------------------------------------------------
# Retained targets
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_changed_labels_emit_modified(reconcile, recorder, session_factory) -> None:
    await reconcile([_pod_observation("10.0.0.1", "app-a")])
    recorder.clear()

    result = await reconcile([_pod_observation("10.0.0.1", "app-a", labels={"app": "app", "v": "2"})])

    assert result.modified == [_url("10.0.0.1")]
    assert recorder.kinds() == [("MODIFIED", _url("10.0.0.1"))]
    async with session_factory() as session:
        labels = await session.run_sync(
            lambda sync: Topology(sync).find_target(_url("10.0.0.1")).labels
        )
    assert labels == {"app": "app", "v": "2"}


@pytest.mark.asyncio
async def test_moved_target_is_relocated_without_found_or_lost(reconcile, recorder, read_tree, child_named) -> None:
    await reconcile([_pod_observation("10.0.0.1", "app-a")])
    recorder.clear()

    result = await reconcile(
        [_pod_observation("10.0.0.1", "db-0", chain=(("db", NodeType.STATEFULSET),))]
    )

    assert result.found == [] and result.lost == []
    assert result.modified == [_url("10.0.0.1")]
    assert recorder.kinds() == [("MODIFIED", _url("10.0.0.1"))]

    namespace = child_named(child_named(await read_tree(), REALM), "ns1")
    assert [child["name"] for child in namespace["children"]] == ["db"]
    pod = child_named(namespace["children"][0], "db-0", "Pod")
    assert pod["children"][0]["target"]["alias"] == "db-0"


@pytest.mark.asyncio
async def test_target_held_by_another_namespace_is_deferred_until_released(
    reconcile, recorder, read_tree, child_named
) -> None:
    """A pass never rewrites another namespace's subtree."""
    await reconcile([_pod_observation("10.0.0.1", "app-a")], namespace="ns1")
    recorder.clear()

    result = await reconcile([_pod_observation("10.0.0.1", "app-a")], namespace="ns2")

    assert result.deferred == {_url("10.0.0.1"): "ns1"}
    assert result.found == [] and result.modified == []
    assert recorder.events == []
    realm = child_named(await read_tree(), REALM)
    assert child_named(realm, "ns1")["children"] != []
    assert child_named(realm, "ns2")["children"] == []

    await reconcile([], namespace="ns1")
    released = await reconcile([_pod_observation("10.0.0.1", "app-a")], namespace="ns2")

    assert released.found == [_url("10.0.0.1")]
    assert recorder.kinds() == [("LOST", _url("10.0.0.1")), ("FOUND", _url("10.0.0.1"))]
    realm = child_named(await read_tree(), REALM)
    assert child_named(realm, "ns1")["children"] == []
    assert child_named(realm, "ns2")["children"] != []


# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_two_ports_of_one_pod_get_distinct_aliases(reconcile, session_factory) -> None:
    await reconcile(
        [
            _pod_observation("10.0.0.1", "app-a", port=9091),
            _pod_observation("10.0.0.1", "app-a", port=9092),
        ]
    )

    async with session_factory() as session:
        aliases = await session.run_sync(
            lambda sync: {t.connect_url: t.alias for t in Topology(sync).all_targets()}
        )
    assert aliases == {
        _url("10.0.0.1", 9091): "app-a",
        _url("10.0.0.1", 9092): "app-a:9092",
    }


@pytest.mark.asyncio
async def test_suffixed_alias_is_stable_across_passes(reconcile, recorder) -> None:
    observations = [
        _pod_observation("10.0.0.1", "app-a", port=9091),
        _pod_observation("10.0.0.1", "app-a", port=9092),
    ]
    await reconcile(observations)
    recorder.clear()

    result = await reconcile(observations)

    assert result.changed is False
    assert recorder.events == []


# ---------------------------------------------------------------------------
# Event sequences
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "sequence",
    ["F", "L", "FL", "FF", "FLF", "FLLF", "LFFL", "FLFLFL", "FFLLFF"],
)
async def test_node_exists_iff_last_observation_found_it(
    sequence, reconcile, recorder, session_factory
) -> None:
    """``F`` observes the target, ``L`` observes an empty scope."""
    url = _url("10.0.0.1")
    expected: list[tuple[str, str]] = []
    present = False

    for step in sequence:
        observed = step == "F"
        await reconcile([_pod_observation("10.0.0.1", "app-a")] if observed else [])
        if observed and not present:
            expected.append(("FOUND", url))
        elif present and not observed:
            expected.append(("LOST", url))
        present = observed

        async with session_factory() as session:
            attached = await session.run_sync(_has_leaf, url)
        assert attached is present

    assert recorder.kinds() == expected


# ---------------------------------------------------------------------------
# Conflicts and failure
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_target_owned_by_another_realm_is_skipped(reconcile, recorder, session_factory) -> None:
    def _seed(session):
        topology = Topology(session)
        realm = topology.ensure_realm("Custom Targets")
        topology.attach_target(realm, TargetSpec(connect_url=_url("10.0.0.1"), alias="manual"))

    await apply_in_transaction(session_factory, None, _seed)

    result = await reconcile([_pod_observation("10.0.0.1", "app-a")])

    assert result.skipped == [_url("10.0.0.1")]
    assert result.found == []
    assert recorder.events == []


@pytest.mark.asyncio
async def test_failed_apply_rolls_back_and_publishes_nothing(session_factory, bus, recorder, read_tree) -> None:
    def _explode(session):
        Reconciler(session).apply(REALM, [_pod_observation("10.0.0.1", "app-a")], namespace="ns1")
        raise RuntimeError("commit refused")

    with pytest.raises(RuntimeError, match="commit refused"):
        await apply_in_transaction(session_factory, bus, _explode)

    assert recorder.events == []
    tree = await read_tree()
    assert tree["children"] == []


@pytest.mark.asyncio
async def test_duplicate_observations_are_collapsed(reconcile, recorder) -> None:
    result = await reconcile(
        [_pod_observation("10.0.0.1", "app-a"), _pod_observation("10.0.0.1", "app-a")]
    )

    assert result.found == [_url("10.0.0.1")]
    assert len(recorder.events) == 1
