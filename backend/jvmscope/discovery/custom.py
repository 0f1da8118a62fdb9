"""
Manually registered ("custom") targets.

Custom targets bypass discovery entirely: a caller supplies a connect URL
(or a ``host:port`` shorthand) and an alias, connectivity is checked
through the connection collaborator, and the target is attached directly
under the ``Custom Targets`` realm.  Deletion is explicit and immediate.
Both run on the ordered worker of the realm's scope.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jvmscope.config import Settings, get_settings
from jvmscope.core.connections import ConnectionProbe
from jvmscope.core.events import EventBus
from jvmscope.core.exceptions import TargetConnectionError, TopologyConflictError
from jvmscope.core.logging import get_logger
from jvmscope.core.urls import host_and_port, sanitize_connect_url
from jvmscope.engine.observations import TargetSpec
from jvmscope.engine.topology import Topology, apply_in_scope, scope_key
from jvmscope.models.node import NodeType
from jvmscope.models.target import (
    HOST_ANNOTATION,
    PORT_ANNOTATION,
    REALM_ANNOTATION,
    Target,
)

logger = get_logger(__name__)

CUSTOM_REALM: str = "Custom Targets"


class CustomTargetService:
    """Create, list and delete manually registered targets.

    Args:
        session_factory: Produces one session per operation.
        bus: Receives FOUND / LOST events after commit.
        probe: Connectivity checker.
        settings: Application settings.
    """

    realm: str = CUSTOM_REALM

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: Optional[EventBus],
        probe: ConnectionProbe,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.probe = probe
        self.settings = settings or get_settings()

    def build_spec(self, connect_url: str, alias: Optional[str]) -> TargetSpec:
        """Normalise the request into a :class:`TargetSpec`.

        Raises:
            ValueError: If the URL is blank or has no scheme, or the alias
                is missing or blank.
        """
        url = sanitize_connect_url(connect_url)
        alias = (alias or "").strip()
        if not alias:
            raise ValueError("Target alias is required.")
        cryostat = {REALM_ANNOTATION: self.realm}
        try:
            host, port = host_and_port(url)
        except ValueError:
            pass
        else:
            cryostat[HOST_ANNOTATION] = host
            cryostat[PORT_ANNOTATION] = str(port)
        return TargetSpec(
            connect_url=url,
            alias=alias,
            cryostat_annotations=cryostat,
        )

    async def create(
        self,
        connect_url: str,
        alias: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        dryrun: bool = False,
    ) -> dict[str, Any]:
        """Validate and attach a custom target.

        Args:
            connect_url: JMX service URL, agent URL or ``host:port``.
            alias: Display name.  Required and unique.
            username: Optional JMX credential used for the connectivity check.
            password: Optional JMX credential used for the connectivity check.
            dryrun: Validate only.  Nothing is persisted and no event is sent.

        Returns:
            The serialised target.

        Raises:
            ValueError: For a malformed connect URL or a blank alias.
            TopologyConflictError: If the URL or alias is already in use.
            TargetConnectionError: If the target cannot be reached.
        """
        spec = self.build_spec(connect_url, alias)

        async with self.session_factory() as session:
            await session.run_sync(lambda sync: self._check_unique(sync, spec))

        try:
            reachable = await asyncio.wait_for(
                self.probe.check(spec.connect_url, username, password),
                timeout=self.settings.CUSTOM_TARGETS_CONNECTION_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            reachable = False
        if not reachable:
            raise TargetConnectionError(f"Could not connect to {spec.connect_url}.")

        if dryrun:
            return {
                "id": None,
                "connectUrl": spec.connect_url,
                "alias": spec.alias,
                "jvmId": None,
                "agent": False,
                "labels": [],
                "annotations": {"platform": [], "cryostat": []},
            }

        def _attach(sync: Session) -> dict[str, Any]:
            self._check_unique(sync, spec)
            topology = Topology(sync)
            realm = topology.ensure_realm(self.realm)
            target = topology.attach_target(realm, spec, NodeType.JVM)
            sync.flush()
            return target.to_dict()

        created = await apply_in_scope(
            self.session_factory, self.bus, scope_key(self.realm), _attach
        )
        logger.info(
            "Custom target created",
            extra={"action": "custom_target_created", "target": spec.connect_url},
        )
        return created

    @staticmethod
    def _check_unique(session: Session, spec: TargetSpec) -> None:
        topology = Topology(session)
        if topology.find_target(spec.connect_url) is not None:
            raise TopologyConflictError(f"Target {spec.connect_url} already exists.")
        if topology.find_target_by_alias(spec.alias) is not None:
            raise TopologyConflictError(f"Alias {spec.alias!r} is already in use.")

    async def delete(self, target_id: int) -> Optional[dict[str, Any]]:
        """Delete a custom target.

        Returns:
            The serialised target, or ``None`` when no such target exists.

        Raises:
            ValueError: If the target belongs to a discovery realm.
        """

        def _detach(sync: Session) -> Optional[dict[str, Any]]:
            target = sync.get(Target, target_id)
            if target is None:
                return None
            if target.realm != self.realm:
                raise ValueError(
                    f"Target {target.connect_url} was discovered in realm "
                    f"{target.realm!r} and cannot be deleted manually."
                )
            snapshot = target.to_dict()
            Topology(sync).detach_target(target)
            return snapshot

        return await apply_in_scope(
            self.session_factory, self.bus, scope_key(self.realm), _detach
        )

    async def list_targets(self) -> list[dict[str, Any]]:
        """Return every persisted target, manual or discovered."""
        async with self.session_factory() as session:
            return await session.run_sync(
                lambda sync: [target.to_dict() for target in Topology(sync).all_targets()]
            )
