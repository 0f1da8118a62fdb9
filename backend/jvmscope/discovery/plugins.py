"""
External discovery plugin registry.

A plugin is an external process that registers itself with a realm name and
a callback URL, then publishes its whole realm subtree whenever it changes.

Protocol:

1. **Register**: the callback is pinged (``GET``) as an admission check.
   On success a :class:`~jvmscope.models.plugin.DiscoveryPlugin` and its
   Realm node are stored and a token is issued for the plugin's resource
   path.  A plugin re-registering with its id and previous token (even an
   expired one) receives a fresh token for the same id.
2. **Publish**: with a valid token, the plugin replaces its realm subtree
   wholesale.  LOST is emitted for targets that disappeared and FOUND for
   new ones.
3. **Deregister**: with a valid token, the plugin and its realm subtree are
   deleted.  Builtin plugins cannot be deregistered.

Plugins that stop answering their callback are pruned at startup and on a
periodic schedule.

Publish, deregistration and pruning rewrite the realm subtree on the ordered
worker of the realm's scope, one at a time.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jvmscope.config import Settings, get_settings
from jvmscope.core.events import EventBus, EventKind
from jvmscope.core.exceptions import AdmissionError, AuthorizationError, TopologyConflictError
from jvmscope.core.logging import get_logger
from jvmscope.core.security import DiscoveryTokenFactory
from jvmscope.engine.observations import NodeSpec
from jvmscope.engine.topology import (
    Topology,
    apply_in_scope,
    apply_in_transaction,
    record_event,
    scope_key,
)
from jvmscope.models.node import DiscoveryNode
from jvmscope.models.plugin import DiscoveryPlugin
from jvmscope.models.target import REALM_ANNOTATION, Target

logger = get_logger(__name__)


class PluginNotFoundError(LookupError):
    """No plugin is registered under the requested id."""


class BuiltinPluginError(PermissionError):
    """Builtin plugins cannot be modified through the plugin protocol."""


@dataclass(frozen=True)
class Callback:
    """A callback URL split into its stored form and Basic credential."""

    url: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def auth(self) -> Optional[tuple[str, str]]:
        if self.username is None:
            return None
        return (self.username, self.password or "")


def parse_callback(raw: Optional[str]) -> Callback:
    """Validate a callback URL and strip its userinfo.

    Raises:
        AdmissionError: If the URL is not an absolute http(s) URL, or carries
            userinfo without a password.
    """
    if not raw or not raw.strip():
        raise AdmissionError("Plugin callback is required.")
    parts = urlsplit(raw.strip())
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise AdmissionError(f"Plugin callback {raw!r} is not an http(s) URL.")

    username: Optional[str] = None
    password: Optional[str] = None
    if "@" in parts.netloc:
        userinfo = parts.netloc.rsplit("@", 1)[0]
        if ":" not in userinfo:
            raise AdmissionError("Plugin callback credential has no password.")
        username, password = userinfo.split(":", 1)
        if not username or not password:
            raise AdmissionError("Plugin callback credential is malformed.")

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    netloc = host if parts.port is None else f"{host}:{parts.port}"
    url = urlunsplit((parts.scheme, netloc, parts.path or "/", parts.query, ""))
    return Callback(url=url, username=username, password=password)


@dataclass(frozen=True)
class Registration:
    """Result of a successful registration."""

    plugin_id: uuid.UUID
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": str(self.plugin_id), "token": self.token}


class PluginService:
    """Registration, publication and liveness of discovery plugins.

    Args:
        session_factory: Produces one session per operation.
        bus: Receives the events of publish and deregister operations.
        tokens: Issues and validates plugin tokens.
        settings: Application settings.
        transport: Optional httpx transport used for callback pings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: Optional[EventBus],
        tokens: DiscoveryTokenFactory,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.tokens = tokens
        self.settings = settings or get_settings()
        self._transport = transport

    def resource_path(self, plugin_id: uuid.UUID) -> str:
        return f"{self.settings.API_V1_PREFIX}/discovery/{plugin_id}"

    # -- Callback liveness -----------------------------------------------------

    async def ping(self, callback: Callback) -> bool:
        """``GET`` the callback.  Any 2xx answer within the timeout is alive."""
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.PLUGIN_CALLBACK_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                response = await client.get(callback.url, auth=callback.auth)
        except httpx.HTTPError as exc:
            logger.info(
                "Plugin callback unreachable: %s",
                exc,
                extra={"action": "plugin_ping_failed", "target": callback.url},
            )
            return False
        if not response.is_success:
            logger.info(
                "Plugin callback answered %d",
                response.status_code,
                extra={"action": "plugin_ping_failed", "target": callback.url},
            )
            return False
        return True

    # -- Builtins --------------------------------------------------------------

    async def ensure_builtin(self, realm: str) -> uuid.UUID:
        """Create the realm and builtin plugin record of a first-party backend."""

        def _ensure(session: Session) -> uuid.UUID:
            topology = Topology(session)
            realm_node = topology.ensure_realm(realm)
            session.flush()
            plugin = session.scalars(
                select(DiscoveryPlugin).where(DiscoveryPlugin.realm_id == realm_node.id)
            ).first()
            if plugin is None:
                plugin = DiscoveryPlugin(realm=realm_node, builtin=True)
                session.add(plugin)
                session.flush()
            return plugin.id

        return await apply_in_transaction(self.session_factory, self.bus, _ensure)

    # -- Registration ----------------------------------------------------------

    async def register(
        self,
        realm: str,
        callback: str,
        plugin_id: Optional[uuid.UUID] = None,
        token: Optional[str] = None,
        request_address: Optional[str] = None,
    ) -> Registration:
        """Register a plugin, or refresh the registration of a known one.

        Args:
            realm: Realm name the plugin will own.
            callback: Liveness callback, optionally with ``user:pass@``.
            plugin_id: Id of an existing registration to refresh.
            token: Previous token of that registration.
            request_address: Resolved address of the caller.

        Returns:
            The plugin id and a freshly issued token.

        Raises:
            AdmissionError: Bad callback, failed ping, or realm already taken.
            AuthorizationError: On refresh, when the previous token is invalid.
            PluginNotFoundError: On refresh, when *plugin_id* is unknown.
        """
        if not realm or not realm.strip():
            raise AdmissionError("Plugin realm name is required.")
        realm = realm.strip()
        parsed = parse_callback(callback)

        if plugin_id is not None:
            return await self._refresh(realm, parsed, plugin_id, token, request_address)

        if not await self.ping(parsed):
            raise AdmissionError(f"Plugin callback {parsed.url} did not respond.")

        def _register(session: Session) -> uuid.UUID:
            topology = Topology(session)
            existing_realm = topology.get_realm(realm)
            if existing_realm is not None:
                owner = self._plugin_for_realm(session, existing_realm)
                if owner is not None and not owner.builtin and owner.callback == parsed.url:
                    owner.credential_username = parsed.username
                    owner.credential_password = parsed.password
                    return owner.id
                raise AdmissionError(f"Realm {realm!r} is already registered.")

            taken = session.scalars(
                select(DiscoveryPlugin).where(DiscoveryPlugin.callback == parsed.url)
            ).first()
            if taken is not None:
                raise AdmissionError(f"Callback {parsed.url} is already registered.")

            realm_node = topology.ensure_realm(realm)
            plugin = DiscoveryPlugin(
                realm=realm_node,
                callback=parsed.url,
                credential_username=parsed.username,
                credential_password=parsed.password,
                builtin=False,
            )
            session.add(plugin)
            session.flush()
            return plugin.id

        new_id = await apply_in_transaction(self.session_factory, self.bus, _register)
        logger.info(
            "Registered discovery plugin",
            extra={"action": "plugin_registered", "target": realm},
        )
        return Registration(
            plugin_id=new_id,
            token=self.tokens.create_token(
                str(new_id), realm, self.resource_path(new_id), request_address
            ),
        )

    async def _refresh(
        self,
        realm: str,
        callback: Callback,
        plugin_id: uuid.UUID,
        token: Optional[str],
        request_address: Optional[str],
    ) -> Registration:
        plugin = await self.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not registered.")
        if plugin["builtin"]:
            raise BuiltinPluginError("Builtin plugins cannot re-register.")
        stored_realm = plugin["realm"]["name"]
        if stored_realm != realm:
            raise AuthorizationError("Realm does not match the registered plugin.")
        self.tokens.validate_token(
            token,
            str(plugin_id),
            stored_realm,
            self.resource_path(plugin_id),
            request_address,
            check_time_claims=False,
        )
        if not await self.ping(callback):
            raise AdmissionError(f"Plugin callback {callback.url} did not respond.")

        def _update(session: Session) -> None:
            record = session.get(DiscoveryPlugin, plugin_id)
            record.callback = callback.url
            record.credential_username = callback.username
            record.credential_password = callback.password

        await apply_in_transaction(self.session_factory, self.bus, _update)
        logger.info(
            "Refreshed discovery plugin registration",
            extra={"action": "plugin_refreshed", "target": realm},
        )
        return Registration(
            plugin_id=plugin_id,
            token=self.tokens.create_token(
                str(plugin_id), realm, self.resource_path(plugin_id), request_address
            ),
        )

    # -- Token-protected operations -------------------------------------------

    async def authorize(
        self,
        plugin_id: uuid.UUID,
        token: Optional[str],
        request_path: str,
        request_address: Optional[str] = None,
    ) -> dict[str, Any]:
        """Validate *token* for a request against *plugin_id*.

        Raises:
            PluginNotFoundError: If the plugin is unknown.
            AuthorizationError: If the token does not authorise the request.
        """
        plugin = await self.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not registered.")
        self.tokens.validate_token(
            token,
            str(plugin_id),
            plugin["realm"]["name"],
            request_path,
            request_address,
        )
        return plugin

    async def publish(
        self,
        plugin_id: uuid.UUID,
        subtree: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Replace the realm subtree of *plugin_id* with *subtree*.

        Targets published again with the same connect URL keep their
        ``jvm_id`` and produce no event.

        Returns:
            The serialised new children of the realm node.

        Raises:
            PluginNotFoundError: If the plugin is unknown.
            BuiltinPluginError: For builtin plugins.
            TopologyConflictError: If a published connect URL belongs to
                another realm, or appears twice.
            ValueError: For a malformed subtree.
        """
        specs = [NodeSpec.from_dict(node) for node in subtree]
        published: dict[str, NodeSpec] = {}
        for spec in specs:
            for leaf in spec.iter_leaves():
                if leaf.target.connect_url in published:
                    raise TopologyConflictError(
                        f"Target {leaf.target.connect_url} is published twice."
                    )
                published[leaf.target.connect_url] = leaf

        def _publish(session: Session) -> list[dict[str, Any]]:
            plugin = session.get(DiscoveryPlugin, plugin_id)
            if plugin is None:
                raise PluginNotFoundError(f"Plugin {plugin_id} is not registered.")
            if plugin.builtin:
                raise BuiltinPluginError("Builtin plugin realms cannot be published to.")
            realm_node = plugin.realm
            topology = Topology(session)

            for url in published:
                existing = topology.find_target(url)
                if existing is None:
                    continue
                owner = topology.realm_of(existing.discovery_node)
                if owner is not None and owner.id != realm_node.id:
                    raise TopologyConflictError(
                        f"Target {url} is already discovered in realm {owner.name!r}."
                    )

            previous: dict[str, Target] = {
                target.connect_url: target for target in realm_node.subtree_targets()
            }
            jvm_ids = {url: target.jvm_id for url, target in previous.items()}
            for url, target in previous.items():
                if url not in published:
                    record_event(session, EventKind.LOST, target)
            topology.clear_children(realm_node, emit=False)
            session.flush()

            for spec in specs:
                self._attach_spec(topology, realm_node, spec, previous, jvm_ids)
            session.flush()
            return [child.to_dict() for child in realm_node.children]

        scope = await self._realm_scope(plugin_id)
        children = await apply_in_scope(self.session_factory, self.bus, scope, _publish)
        logger.info(
            "Plugin published %d targets",
            len(published),
            extra={"action": "plugin_published", "target": str(plugin_id)},
        )
        return children

    def _attach_spec(
        self,
        topology: Topology,
        parent: DiscoveryNode,
        spec: NodeSpec,
        previous: dict[str, Target],
        jvm_ids: dict[str, Optional[str]],
    ) -> None:
        if spec.leaf:
            target_spec = spec.target
            if not target_spec.jvm_id:
                target_spec.jvm_id = jvm_ids.get(target_spec.connect_url)
            target_spec.cryostat_annotations[REALM_ANNOTATION] = topology.realm_of(parent).name
            topology.attach_target(
                parent,
                target_spec,
                spec.node_type,
                emit=target_spec.connect_url not in previous,
            )
            return
        node = topology.attach_environment(parent, spec.name, spec.node_type, labels=spec.labels)
        for child in spec.children:
            self._attach_spec(topology, node, child, previous, jvm_ids)

    async def deregister(self, plugin_id: uuid.UUID) -> dict[str, Any]:
        """Delete a plugin and its realm subtree.

        Raises:
            PluginNotFoundError: If the plugin is unknown.
            BuiltinPluginError: For builtin plugins.
        """

        def _deregister(session: Session) -> dict[str, Any]:
            plugin = session.get(DiscoveryPlugin, plugin_id)
            if plugin is None:
                raise PluginNotFoundError(f"Plugin {plugin_id} is not registered.")
            if plugin.builtin:
                raise BuiltinPluginError("Builtin plugins cannot be deregistered.")
            snapshot = plugin.to_dict()
            self._delete_plugin(session, plugin)
            return snapshot

        scope = await self._realm_scope(plugin_id)
        removed = await apply_in_scope(self.session_factory, self.bus, scope, _deregister)
        logger.info(
            "Deregistered discovery plugin",
            extra={"action": "plugin_deregistered", "target": removed["realm"]["name"]},
        )
        return removed

    @staticmethod
    def _delete_plugin(session: Session, plugin: DiscoveryPlugin) -> None:
        realm_node = plugin.realm
        for target in realm_node.subtree_targets():
            record_event(session, EventKind.LOST, target)
        session.delete(plugin)
        session.flush()
        universe = realm_node.parent
        if universe is not None:
            universe.children.remove(realm_node)
        else:
            session.delete(realm_node)

    # -- Liveness pruning ------------------------------------------------------

    async def prune(self) -> list[uuid.UUID]:
        """Ping every external plugin and delete those that do not answer.

        Returns:
            Ids of the deleted plugins.
        """
        async with self.session_factory() as session:
            plugins: list[tuple[uuid.UUID, str, Callback]] = await session.run_sync(
                lambda sync: [
                    (
                        plugin.id,
                        plugin.realm.name,
                        Callback(
                            url=plugin.callback,
                            username=plugin.credential_username,
                            password=plugin.credential_password,
                        ),
                    )
                    for plugin in sync.scalars(
                        select(DiscoveryPlugin).where(DiscoveryPlugin.builtin.is_(False))
                    )
                    if plugin.callback
                ]
            )

        pruned: list[uuid.UUID] = []
        for plugin_id, realm, callback in plugins:
            if await self.ping(callback):
                continue

            def _remove(session: Session, plugin_id: uuid.UUID = plugin_id) -> bool:
                plugin = session.get(DiscoveryPlugin, plugin_id)
                if plugin is None:
                    return False
                self._delete_plugin(session, plugin)
                return True

            try:
                removed = await apply_in_scope(
                    self.session_factory, self.bus, scope_key(realm), _remove
                )
            except Exception:
                logger.exception(
                    "Could not prune discovery plugin",
                    extra={"action": "plugin_prune_failed", "target": callback.url},
                )
                continue
            if removed:
                pruned.append(plugin_id)
                logger.warning(
                    "Pruned unreachable discovery plugin",
                    extra={"action": "plugin_pruned", "target": callback.url},
                )
        return pruned

    # -- Queries ---------------------------------------------------------------

    async def list_plugins(self, realm: Optional[str] = None) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            return await session.run_sync(
                lambda sync: [
                    plugin.to_dict()
                    for plugin in sync.scalars(
                        select(DiscoveryPlugin).order_by(DiscoveryPlugin.registered_at)
                    )
                    if realm is None or plugin.realm.name == realm
                ]
            )

    async def get(self, plugin_id: uuid.UUID) -> Optional[dict[str, Any]]:
        async with self.session_factory() as session:
            return await session.run_sync(
                lambda sync: _plugin_dict(sync.get(DiscoveryPlugin, plugin_id))
            )

    async def _realm_scope(self, plugin_id: uuid.UUID) -> str:
        plugin = await self.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} is not registered.")
        return scope_key(plugin["realm"]["name"])

    @staticmethod
    def _plugin_for_realm(session: Session, realm_node: DiscoveryNode) -> Optional[DiscoveryPlugin]:
        return session.scalars(
            select(DiscoveryPlugin).where(DiscoveryPlugin.realm_id == realm_node.id)
        ).first()


def _plugin_dict(plugin: Optional[DiscoveryPlugin]) -> Optional[dict[str, Any]]:
    return plugin.to_dict() if plugin is not None else None
