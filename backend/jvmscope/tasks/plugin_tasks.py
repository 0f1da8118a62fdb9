"""
Celery Beat periodic task for discovery plugin liveness.

Pings the callback of every external plugin and deletes the plugins (and
their realm subtrees) that stopped answering.  LOST events for their
targets are republished on the Redis notification channel.
"""

from __future__ import annotations

import asyncio
from typing import Any

from jvmscope.core.celery_app import PRUNE_TASK_NAME, celery
from jvmscope.core.logging import get_logger

logger = get_logger(__name__)


async def _prune_plugins() -> list[str]:
    """Run one pruning pass with a task-local engine.

    Returns:
        Ids of the pruned plugins.
    """
    from jvmscope.config import get_settings
    from jvmscope.core.database import build_engine, build_session_factory
    from jvmscope.core.events import EventBus, RedisNotifier
    from jvmscope.core.security import DiscoveryTokenFactory
    from jvmscope.discovery.plugins import PluginService

    # Celery workers run a new loop per task, so the process-wide engine
    # cannot be reused.
    settings = get_settings()
    task_engine = build_engine()
    bus = EventBus()
    notifier = RedisNotifier()
    bus.subscribe(notifier)

    try:
        service = PluginService(
            build_session_factory(task_engine),
            bus,
            DiscoveryTokenFactory(settings),
            settings=settings,
        )
        pruned = await service.prune()
    finally:
        await notifier.close()
        await bus.close()
        await task_engine.dispose()

    return [str(plugin_id) for plugin_id in pruned]


@celery.task(
    name=PRUNE_TASK_NAME,
    bind=True,
    max_retries=0,
)
def prune_plugins(self: Any) -> dict[str, Any]:
    """Celery task that removes unreachable discovery plugins.

    Called periodically by Celery Beat every ``PLUGIN_PING_PERIOD_SECONDS``.
    """
    loop = asyncio.new_event_loop()
    try:
        pruned = loop.run_until_complete(_prune_plugins())
        if pruned:
            logger.info(
                "Pruned %d discovery plugins",
                len(pruned),
                extra={"action": "plugins_pruned", "target": "beat"},
            )
        return {"status": "ok", "pruned": pruned}
    except Exception as exc:
        logger.exception(
            "Plugin pruning failed: %s",
            exc,
            extra={"action": "plugins_prune_failed", "target": "beat"},
        )
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()
