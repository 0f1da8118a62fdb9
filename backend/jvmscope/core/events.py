"""
Discovery event bus.

Two responsibilities live here:

1. **Per-scope ordered execution.**  Reconciliation apply stages are
   submitted under a *scope key* (``"KubernetesApi/ns1"``, ``"Podman"``...).
   Each scope has exactly one ``asyncio`` worker that drains a FIFO queue, so
   two applies for the same scope never overlap while different scopes run
   concurrently.  A pending, not yet started request with the same
   *coalesce key* is reused instead of queueing a duplicate.

2. **Fan-out of committed events.**  Every committed
   :class:`TargetDiscoveryEvent` is handed to each subscriber in
   registration order.  A failing subscriber is logged and never affects the
   others.

:class:`RedisNotifier` is the subscriber that republishes events as JSON on
the Redis Pub/Sub channel relayed by the ``/ws/discovery`` WebSocket.
"""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

import redis.asyncio as aioredis

from jvmscope.config import get_settings
from jvmscope.core.logging import get_logger

logger = get_logger(__name__)


# ── Event types ──────────────────────────────────────────────────────────────

class EventKind(str, enum.Enum):
    FOUND = "FOUND"
    MODIFIED = "MODIFIED"
    LOST = "LOST"


@dataclass(frozen=True)
class TargetDiscoveryEvent:
    """Snapshot of a target at the moment it was found, modified, or lost."""

    kind: EventKind
    connect_url: str
    alias: str
    realm: Optional[str] = None
    target_id: Optional[int] = None
    jvm_id: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, dict[str, str]] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_target(cls, kind: EventKind, target: Any) -> "TargetDiscoveryEvent":
        return cls(
            kind=kind,
            connect_url=target.connect_url,
            alias=target.alias,
            realm=target.realm,
            target_id=target.id,
            jvm_id=target.jvm_id,
            labels=dict(target.labels or {}),
            annotations={
                tier: dict(values)
                for tier, values in (target.annotations or {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "target": {
                "id": self.target_id,
                "connectUrl": self.connect_url,
                "alias": self.alias,
                "jvmId": self.jvm_id,
                "realm": self.realm,
                "labels": self.labels,
                "annotations": self.annotations,
            },
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[TargetDiscoveryEvent], Awaitable[None]]


# ── Bus ──────────────────────────────────────────────────────────────────────

@dataclass
class _Job:
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    coalesce_key: Optional[str] = None


class EventBus:
    """Per-scope serialised job runner plus event fan-out."""

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[_Job]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._pending: dict[tuple[str, str], _Job] = {}
        self._subscribers: list[Subscriber] = []
        self._closed: bool = False

    # -- Subscribers -----------------------------------------------------------

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def publish(self, events: Iterable[TargetDiscoveryEvent]) -> None:
        """Deliver *events*, in order, to every subscriber."""
        for event in events:
            logger.info(
                "Target %s",
                event.kind.value.lower(),
                extra={"action": f"target_{event.kind.value.lower()}", "target": event.connect_url},
            )
            for subscriber in list(self._subscribers):
                try:
                    await subscriber(event)
                except Exception:
                    logger.exception(
                        "Discovery event subscriber failed",
                        extra={"action": "subscriber_error", "target": event.connect_url},
                    )

    # -- Scoped execution ------------------------------------------------------

    def submit(
        self,
        scope: str,
        fn: Callable[[], Awaitable[Any]],
        coalesce_key: Optional[str] = None,
    ) -> asyncio.Future:
        """Queue *fn* on the ordered worker of *scope*.

        Args:
            scope: Scope key.  Jobs with the same key run one at a time in
                submission order.
            fn: Zero-argument coroutine function to run.
            coalesce_key: When a job with the same scope and coalesce key is
                still waiting in the queue, its future is returned and *fn*
                is dropped.

        Returns:
            A future resolved with the job's result or exception.

        Raises:
            RuntimeError: If the bus has been closed.
        """
        if self._closed:
            raise RuntimeError("Event bus is closed.")

        if coalesce_key is not None:
            waiting = self._pending.get((scope, coalesce_key))
            if waiting is not None:
                return waiting.future

        loop = asyncio.get_running_loop()
        job = _Job(fn=fn, future=loop.create_future(), coalesce_key=coalesce_key)
        if coalesce_key is not None:
            self._pending[(scope, coalesce_key)] = job

        queue = self._queues.get(scope)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[scope] = queue
        queue.put_nowait(job)

        worker = self._workers.get(scope)
        if worker is None or worker.done():
            self._workers[scope] = loop.create_task(
                self._run_scope(scope, queue),
                name=f"discovery-scope:{scope}",
            )
        return job.future

    async def _run_scope(self, scope: str, queue: asyncio.Queue[_Job]) -> None:
        while True:
            job = await queue.get()
            if job.coalesce_key is not None:
                self._pending.pop((scope, job.coalesce_key), None)
            try:
                result = await job.fn()
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as exc:
                if not job.future.done():
                    job.future.set_exception(exc)
            else:
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                queue.task_done()

    async def drain(self, scope: Optional[str] = None) -> None:
        """Wait until every queued job (of *scope*, or of all scopes) has run."""
        scopes = [scope] if scope is not None else list(self._queues)
        for key in scopes:
            queue = self._queues.get(key)
            if queue is not None:
                await queue.join()

    async def close(self) -> None:
        """Cancel every scope worker and fail jobs that never started."""
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for queue in self._queues.values():
            while not queue.empty():
                job = queue.get_nowait()
                if not job.future.done():
                    job.future.cancel()
        self._workers.clear()
        self._queues.clear()
        self._pending.clear()


# ── Redis notifier ───────────────────────────────────────────────────────────

class RedisNotifier:
    """Bus subscriber that republishes events on a Redis Pub/Sub channel."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None) -> None:
        settings = get_settings()
        self._redis_url: str = redis_url or settings.REDIS_URL
        self.channel: str = channel or settings.NOTIFICATION_CHANNEL
        self._client: Optional[aioredis.Redis] = None

    async def __call__(self, event: TargetDiscoveryEvent) -> None:
        message: str = json.dumps(event.to_dict(), default=str)
        try:
            if self._client is None:
                self._client = aioredis.from_url(self._redis_url)
            await self._client.publish(self.channel, message)
        except Exception as exc:
            logger.warning(
                "Failed to publish Redis event: %s",
                exc,
                extra={"action": "redis_publish_error", "target": event.connect_url},
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
