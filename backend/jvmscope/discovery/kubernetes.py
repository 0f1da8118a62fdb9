"""
Kubernetes / OpenShift API discovery.

Targets are found through the endpoints of Services: either
``discovery.k8s.io/v1`` EndpointSlices (default) or core v1 Endpoints.  Every
endpoint address whose port matches the configured port names or numbers
becomes one JMX target.  When the endpoint references a Pod, the Pod's
ownership chain (ReplicaSet, Deployment, StatefulSet...) is resolved
through the API and placed between the namespace node and the target.

Each watched namespace is one reconciliation scope (``KubernetesApi/<ns>``).
A scope is reconciled:

- on every add, update or delete notification of a watch stream,
- on a periodic forced resync that replays every watched namespace,
- once at startup.

The Python client is synchronous, so API reads run in worker threads and
watch streams run on daemon threads that hand notifications back to the
event loop.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException

from jvmscope.core.logging import get_logger
from jvmscope.core.urls import create_service_url
from jvmscope.discovery.base import DiscoveryBackend
from jvmscope.discovery.registry import BackendRegistry
from jvmscope.engine.observations import NodeSpec, Observation, TargetSpec
from jvmscope.engine.ownership import ObjectMeta, OwnerReference, OwnershipChainResolver
from jvmscope.models.node import NodeType
from jvmscope.models.target import (
    HOST_ANNOTATION,
    NAMESPACE_ANNOTATION,
    OBJECT_NAME_ANNOTATION,
    POD_NAME_ANNOTATION,
    PORT_ANNOTATION,
    REALM_ANNOTATION,
)

logger = get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

NAMESPACE_LABEL: str = "discovery.cryostat.io/namespace"
ALL_NAMESPACES: str = "*"
OWN_NAMESPACE: str = "."

CONDITION_READY_ANNOTATION: str = "CONDITION_READY"
CONDITION_SERVING_ANNOTATION: str = "CONDITION_SERVING"
CONDITION_TERMINATING_ANNOTATION: str = "CONDITION_TERMINATING"

SUPPORTED_OWNER_KINDS: tuple[str, ...] = (
    NodeType.POD.value,
    NodeType.REPLICASET.value,
    NodeType.DEPLOYMENT.value,
    NodeType.STATEFULSET.value,
    NodeType.DAEMONSET.value,
    NodeType.REPLICATIONCONTROLLER.value,
    NodeType.DEPLOYMENTCONFIG.value,
)

_OPENSHIFT_APPS_GROUP: str = "apps.openshift.io"
_OPENSHIFT_APPS_VERSION: str = "v1"
_DEPLOYMENT_CONFIG_PLURAL: str = "deploymentconfigs"

_WATCH_TIMEOUT_SECONDS: int = 300
_WATCH_RETRY_SECONDS: float = 5.0
_WATCH_JOIN_TIMEOUT_SECONDS: float = 5.0


# ── API access ───────────────────────────────────────────────────────────────

def object_meta(obj: Optional[dict[str, Any]], kind: str) -> Optional[ObjectMeta]:
    """Extract :class:`ObjectMeta` from a serialised API object."""
    if obj is None:
        return None
    metadata = obj.get("metadata") or {}
    return ObjectMeta(
        namespace=metadata.get("namespace", ""),
        kind=obj.get("kind") or kind,
        name=metadata.get("name", ""),
        labels=dict(metadata.get("labels") or {}),
        annotations=dict(metadata.get("annotations") or {}),
        owner_references=[
            OwnerReference(kind=owner.get("kind", ""), name=owner.get("name", ""))
            for owner in metadata.get("ownerReferences") or []
        ],
    )


class KubeApiClient:
    """Thin synchronous wrapper over the official Kubernetes client.

    Objects are returned in their serialised (camelCase dict) form so the
    conversion code works on plain data.
    """

    def __init__(
        self,
        api_client: k8s_client.ApiClient,
        request_timeout: float = 10.0,
    ) -> None:
        self.api_client = api_client
        self.core = k8s_client.CoreV1Api(api_client)
        self.apps = k8s_client.AppsV1Api(api_client)
        self.discovery = k8s_client.DiscoveryV1Api(api_client)
        self.custom = k8s_client.CustomObjectsApi(api_client)
        self.request_timeout = request_timeout

    @classmethod
    def from_environment(cls, request_timeout: float = 10.0) -> "KubeApiClient":
        """Load in-cluster configuration, falling back to the local kubeconfig."""
        try:
            k8s_config.load_incluster_config()
            logger.info(
                "Loaded in-cluster Kubernetes config",
                extra={"action": "kube_config", "target": "incluster"},
            )
        except k8s_config.ConfigException:
            k8s_config.load_kube_config()
            logger.info(
                "Loaded kubeconfig",
                extra={"action": "kube_config", "target": "kubeconfig"},
            )
        return cls(k8s_client.ApiClient(), request_timeout=request_timeout)

    def _serialise(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    # -- Reads -----------------------------------------------------------------

    def list_namespaces(self) -> list[str]:
        result = self.core.list_namespace(_request_timeout=self.request_timeout)
        return sorted(item.metadata.name for item in result.items)

    def list_endpoint_slices(self, namespace: str) -> list[dict[str, Any]]:
        result = self.discovery.list_namespaced_endpoint_slice(
            namespace, _request_timeout=self.request_timeout
        )
        return [self._serialise(item) for item in result.items]

    def list_endpoints(self, namespace: str) -> list[dict[str, Any]]:
        result = self.core.list_namespaced_endpoints(
            namespace, _request_timeout=self.request_timeout
        )
        return [self._serialise(item) for item in result.items]

    def get_object(self, namespace: str, kind: str, name: str) -> Optional[dict[str, Any]]:
        """Read one owner-chain object, ``None`` when it does not exist.

        Raises:
            ApiException: For any failure other than *404 Not Found*.
            ValueError: For a kind without a known read call.
        """
        readers: dict[str, Callable[[], Any]] = {
            NodeType.POD.value: lambda: self.core.read_namespaced_pod(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.REPLICATIONCONTROLLER.value: lambda: self.core.read_namespaced_replication_controller(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.REPLICASET.value: lambda: self.apps.read_namespaced_replica_set(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.DEPLOYMENT.value: lambda: self.apps.read_namespaced_deployment(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.STATEFULSET.value: lambda: self.apps.read_namespaced_stateful_set(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.DAEMONSET.value: lambda: self.apps.read_namespaced_daemon_set(
                name, namespace, _request_timeout=self.request_timeout
            ),
            NodeType.DEPLOYMENTCONFIG.value: lambda: self.custom.get_namespaced_custom_object(
                _OPENSHIFT_APPS_GROUP,
                _OPENSHIFT_APPS_VERSION,
                namespace,
                _DEPLOYMENT_CONFIG_PLURAL,
                name,
                _request_timeout=self.request_timeout,
            ),
        }
        reader = readers.get(kind)
        if reader is None:
            raise ValueError(f"No reader for kind {kind!r}.")
        try:
            return self._serialise(reader())
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get_metadata(self, namespace: str, kind: str, name: str) -> Optional[ObjectMeta]:
        return object_meta(self.get_object(namespace, kind, name), kind)

    # -- Watches ---------------------------------------------------------------

    def watch_stream(
        self,
        watcher: k8s_watch.Watch,
        namespace: str,
        use_endpoint_slices: bool,
    ) -> Iterator[dict[str, Any]]:
        """Yield raw watch events for endpoint objects in *namespace* (``*`` = all)."""
        if use_endpoint_slices:
            if namespace == ALL_NAMESPACES:
                return watcher.stream(
                    self.discovery.list_endpoint_slice_for_all_namespaces,
                    timeout_seconds=_WATCH_TIMEOUT_SECONDS,
                )
            return watcher.stream(
                self.discovery.list_namespaced_endpoint_slice,
                namespace,
                timeout_seconds=_WATCH_TIMEOUT_SECONDS,
            )
        if namespace == ALL_NAMESPACES:
            return watcher.stream(
                self.core.list_endpoints_for_all_namespaces,
                timeout_seconds=_WATCH_TIMEOUT_SECONDS,
            )
        return watcher.stream(
            self.core.list_namespaced_endpoints,
            namespace,
            timeout_seconds=_WATCH_TIMEOUT_SECONDS,
        )


# ── Endpoint conversion ──────────────────────────────────────────────────────

@dataclass
class EndpointTuple:
    """One (object reference, address, port) combination of an endpoint object."""

    ref_kind: str
    ref_name: str
    namespace: str
    address: str
    port_name: Optional[str]
    port: int
    conditions: Optional[dict[str, Any]] = None
    ip: Optional[str] = None

    @property
    def is_pod(self) -> bool:
        return self.ref_kind == NodeType.POD.value


def _dns_name(ip: str, namespace: str, pod: bool) -> str:
    """Cluster DNS name of an IPv4 address: ``a-b-c-d.<namespace>``, plus ``.pod`` for Pods."""
    name = f"{ip.replace('.', '-')}.{namespace}"
    return f"{name}.pod" if pod else name


# ── Backend ──────────────────────────────────────────────────────────────────

@BackendRegistry.register
class KubeApiDiscovery(DiscoveryBackend):
    """JMX-capable endpoints of Kubernetes Services."""

    name: str = "kubernetes"
    realm: str = "KubernetesApi"
    description: str = "Service endpoints of a Kubernetes or OpenShift cluster"

    def __init__(self, settings=None, client: Optional[KubeApiClient] = None) -> None:
        super().__init__(settings)
        self.client: Optional[KubeApiClient] = client
        self._known_namespaces: set[str] = set()
        self._watch_stop = threading.Event()
        self._watch_threads: list[threading.Thread] = []
        self._watchers: list[k8s_watch.Watch] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- Configuration ---------------------------------------------------------

    def enabled(self) -> bool:
        return self.settings.KUBERNETES_ENABLED

    def available(self) -> bool:
        return bool(self.settings.KUBERNETES_SERVICE_HOST) and self.own_namespace() is not None

    def own_namespace(self) -> Optional[str]:
        try:
            with open(self.settings.KUBERNETES_NAMESPACE_PATH, encoding="utf-8") as handle:
                namespace = handle.read().strip()
        except OSError:
            return None
        return namespace or None

    def watch_namespaces(self) -> list[str]:
        """Configured namespaces with ``.`` resolved.  ``["*"]`` means all namespaces."""
        resolved: set[str] = set()
        for namespace in self.settings.KUBERNETES_NAMESPACES:
            namespace = namespace.strip()
            if namespace == ALL_NAMESPACES:
                return [ALL_NAMESPACES]
            if namespace == OWN_NAMESPACE:
                namespace = self.own_namespace() or ""
            if namespace:
                resolved.add(namespace)
        return sorted(resolved)

    @property
    def watches_all_namespaces(self) -> bool:
        return self.watch_namespaces() == [ALL_NAMESPACES]

    def scopes(self) -> list[Optional[str]]:
        if self.watches_all_namespaces:
            return sorted(self._known_namespaces)
        return list(self.watch_namespaces())

    def namespace_for(self, scope: Optional[str]) -> Optional[str]:
        return scope

    def namespace_labels(self, namespace: str) -> dict[str, str]:
        return {NAMESPACE_LABEL: namespace}

    def scope_for_namespace(self, namespace: Optional[str]) -> Optional[str]:
        return namespace

    def target_scope_key(self, cryostat_annotations: dict[str, str]) -> str:
        return self.scope_key(cryostat_annotations.get(NAMESPACE_ANNOTATION))

    def is_compatible_port(self, name: Optional[str], number: Optional[int]) -> bool:
        return (
            name is not None and name in self.settings.KUBERNETES_PORT_NAMES
        ) or (
            number is not None and number in self.settings.KUBERNETES_PORT_NUMBERS
        )

    # -- Observation -----------------------------------------------------------

    async def list_observations(self, scope: Optional[str] = None) -> list[Observation]:
        if scope is None:
            raise ValueError("Kubernetes scopes are namespaces.")
        if self.client is None:
            raise RuntimeError("Kubernetes client is not initialised.")
        return await asyncio.to_thread(self.observe_namespace, scope)

    def new_resolver(self) -> OwnershipChainResolver:
        return OwnershipChainResolver(
            self.client,
            SUPPORTED_OWNER_KINDS,
            node_labels=self.node_labels,
        )

    @staticmethod
    def node_labels(namespace: str, meta: Optional[ObjectMeta]) -> dict[str, str]:
        labels = dict(meta.labels) if meta is not None else {}
        labels[NAMESPACE_LABEL] = namespace
        return labels

    def observe_namespace(self, namespace: str) -> list[Observation]:
        """Blocking observation of one namespace.  Runs in a worker thread."""
        if self.settings.KUBERNETES_USE_ENDPOINT_SLICES:
            tuples = [
                item
                for slice_obj in self.client.list_endpoint_slices(namespace)
                for item in self.tuples_from_endpoint_slice(slice_obj, namespace)
            ]
        else:
            tuples = [
                item
                for endpoints in self.client.list_endpoints(namespace)
                for item in self.tuples_from_endpoints(endpoints, namespace)
            ]

        resolver = self.new_resolver()
        observations: list[Observation] = []
        for item in tuples:
            observation = self.observation_for(item, resolver)
            if observation is not None:
                observations.append(observation)
        return observations

    def tuples_from_endpoint_slice(
        self,
        slice_obj: dict[str, Any],
        namespace: str,
    ) -> list[EndpointTuple]:
        address_type = (slice_obj.get("addressType") or "").lower()
        if address_type == "ipv6" and not self.settings.KUBERNETES_IPV6_ENABLED:
            return []

        tuples: list[EndpointTuple] = []
        for port in slice_obj.get("ports") or []:
            if not self.is_compatible_port(port.get("name"), port.get("port")):
                continue
            for endpoint in slice_obj.get("endpoints") or []:
                addresses = endpoint.get("addresses") or []
                ref = endpoint.get("targetRef")
                if not addresses or ref is None:
                    continue
                # Addresses of one endpoint are fungible; the first is enough.
                ip = addresses[0]
                ref_namespace = ref.get("namespace") or namespace
                ref_kind = ref.get("kind", "")
                address = ip
                if address_type == "ipv6":
                    address = f"[{ip}]"
                elif address_type == "ipv4" and self.settings.KUBERNETES_IPV4_DNS_TRANSFORM:
                    address = _dns_name(ip, ref_namespace, ref_kind == NodeType.POD.value)
                tuples.append(
                    EndpointTuple(
                        ref_kind=ref_kind,
                        ref_name=ref.get("name", ""),
                        namespace=ref_namespace,
                        address=address,
                        port_name=port.get("name"),
                        port=int(port["port"]),
                        conditions=dict(endpoint.get("conditions") or {}),
                        ip=ip,
                    )
                )
        return tuples

    def tuples_from_endpoints(
        self,
        endpoints: dict[str, Any],
        namespace: str,
    ) -> list[EndpointTuple]:
        tuples: list[EndpointTuple] = []
        for subset in endpoints.get("subsets") or []:
            for port in subset.get("ports") or []:
                if not self.is_compatible_port(port.get("name"), port.get("port")):
                    continue
                for address in subset.get("addresses") or []:
                    ref = address.get("targetRef")
                    ip = address.get("ip")
                    if ref is None or not ip:
                        continue
                    ref_namespace = ref.get("namespace") or namespace
                    ref_kind = ref.get("kind", "")
                    if ":" in ip:
                        if not self.settings.KUBERNETES_IPV6_ENABLED:
                            continue
                        host = f"[{ip}]"
                    elif self.settings.KUBERNETES_IPV4_DNS_TRANSFORM:
                        host = _dns_name(ip, ref_namespace, ref_kind == NodeType.POD.value)
                    else:
                        host = ip
                    tuples.append(
                        EndpointTuple(
                            ref_kind=ref_kind,
                            ref_name=ref.get("name", ""),
                            namespace=ref_namespace,
                            address=host,
                            port_name=port.get("name"),
                            port=int(port["port"]),
                            ip=ip,
                        )
                    )
        return tuples

    def observation_for(
        self,
        item: EndpointTuple,
        resolver: OwnershipChainResolver,
    ) -> Optional[Observation]:
        """Convert one endpoint tuple into a target with its ownership chain."""
        try:
            connect_url = create_service_url(item.address, item.port)
        except ValueError as exc:
            logger.warning(
                "Target conversion failed: %s",
                exc,
                extra={"action": "kube_target_invalid", "target": item.address},
            )
            return None

        resolved = resolver.node_for(item.namespace, item.ref_kind, item.ref_name)
        meta = resolved[0] if resolved is not None else None

        cryostat = {
            REALM_ANNOTATION: self.realm,
            HOST_ANNOTATION: item.ip or item.address,
            PORT_ANNOTATION: str(item.port),
            NAMESPACE_ANNOTATION: item.namespace,
            (POD_NAME_ANNOTATION if item.is_pod else OBJECT_NAME_ANNOTATION): item.ref_name,
        }
        if item.conditions is not None:
            cryostat[CONDITION_READY_ANNOTATION] = _flag(item.conditions.get("ready"))
            cryostat[CONDITION_SERVING_ANNOTATION] = _flag(item.conditions.get("serving"))
            cryostat[CONDITION_TERMINATING_ANNOTATION] = _flag(item.conditions.get("terminating"))

        target = TargetSpec(
            connect_url=connect_url,
            alias=item.ref_name,
            labels=dict(meta.labels) if meta is not None else {},
            platform_annotations=dict(meta.annotations) if meta is not None else {},
            cryostat_annotations=cryostat,
        )
        leaf = NodeSpec.for_target(target, NodeType.ENDPOINT)
        if item.is_pod:
            pod_node = resolver.resolve(item.namespace, item.ref_kind, item.ref_name)
            if pod_node is not None:
                pod_node.add_child(leaf)
        return Observation(target=target, node=leaf)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self.client is None:
            try:
                self.client = await asyncio.to_thread(
                    KubeApiClient.from_environment,
                    self.settings.KUBERNETES_REQUEST_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.warning(
                    "No Kubernetes configuration available: %s",
                    exc,
                    extra={"action": "backend_unavailable", "target": self.realm},
                )
                return

        self._loop = asyncio.get_running_loop()
        self._watch_stop.clear()
        for namespace in self.watch_namespaces():
            thread = threading.Thread(
                target=self._watch_loop,
                args=(namespace,),
                name=f"kube-watch:{namespace}",
                daemon=True,
            )
            self._watch_threads.append(thread)
            thread.start()

        self.spawn(self.resync(), "initial-sync")
        if self.settings.KUBERNETES_FORCE_RESYNC_ENABLED:
            self.spawn(
                self.every(self.settings.KUBERNETES_RESYNC_PERIOD_SECONDS, self.resync),
                "resync",
            )
        logger.info(
            "Watching namespaces %s",
            ", ".join(self.watch_namespaces()),
            extra={"action": "backend_started", "target": self.realm},
        )

    async def resync(self) -> None:
        """Forced full reconciliation of every watched namespace."""
        if self.watches_all_namespaces and self.client is not None:
            try:
                namespaces = await asyncio.to_thread(self.client.list_namespaces)
            except Exception as exc:
                logger.warning(
                    "Could not list namespaces: %s",
                    exc,
                    extra={"action": "observe_failed", "target": self.realm},
                )
            else:
                self._known_namespaces.update(namespaces)
        await super().resync()

    def _watch_loop(self, namespace: str) -> None:
        use_slices = self.settings.KUBERNETES_USE_ENDPOINT_SLICES
        while not self._watch_stop.is_set():
            watcher = k8s_watch.Watch()
            self._watchers.append(watcher)
            try:
                for event in self.client.watch_stream(watcher, namespace, use_slices):
                    if self._watch_stop.is_set():
                        watcher.stop()
                        break
                    self._dispatch_watch_event(event, namespace)
            except Exception as exc:
                logger.warning(
                    "Watch stream failed: %s",
                    exc,
                    extra={"action": "watch_failed", "target": namespace},
                )
                self._watch_stop.wait(_WATCH_RETRY_SECONDS)
            finally:
                if watcher in self._watchers:
                    self._watchers.remove(watcher)

    def _dispatch_watch_event(self, event: dict[str, Any], watched: str) -> None:
        obj = event.get("object")
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or watched
        if namespace == ALL_NAMESPACES or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self.on_endpoints_changed, namespace)

    def on_endpoints_changed(self, namespace: str) -> None:
        """Event-loop side of a watch notification."""
        self._known_namespaces.add(namespace)
        self.request_reconcile(namespace)

    async def stop(self) -> None:
        """Stop the watch streams and wait a bounded time for their threads."""
        self._watch_stop.set()
        for watcher in list(self._watchers):
            watcher.stop()
        threads, self._watch_threads = self._watch_threads, []
        await asyncio.gather(
            *(asyncio.to_thread(thread.join, _WATCH_JOIN_TIMEOUT_SECONDS) for thread in threads)
        )
        for thread in threads:
            if thread.is_alive():
                logger.warning(
                    "Watch thread did not stop within %.0fs",
                    _WATCH_JOIN_TIMEOUT_SECONDS,
                    extra={"action": "watch_stop_timeout", "target": thread.name},
                )
        await super().stop()


def _flag(value: Any) -> str:
    return "true" if value is True else "false"
