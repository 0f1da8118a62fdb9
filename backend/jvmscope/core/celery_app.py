"""
Celery application for JvmScope's periodic work.

Redis serves as broker and result backend.  The only scheduled job is plugin
pruning: Beat enqueues ``jvmscope.prune_plugins`` once per
``PLUGIN_PING_PERIOD_SECONDS`` on the ``discovery`` queue.  A prune that is
still queued when the next one is due expires instead of piling up behind a
slow worker.
"""

from __future__ import annotations

from celery import Celery

from jvmscope.config import Settings, get_settings

DISCOVERY_QUEUE: str = "discovery"
PRUNE_TASK_NAME: str = "jvmscope.prune_plugins"

# Headroom over the worst case of pinging every plugin sequentially.
_PRUNE_TIME_LIMIT_FACTOR: int = 20
_RESULT_EXPIRES_SECONDS: int = 3600


def _prune_time_limits(settings: Settings) -> tuple[float, float]:
    soft = max(60.0, settings.PLUGIN_CALLBACK_TIMEOUT_SECONDS * _PRUNE_TIME_LIMIT_FACTOR)
    return soft, soft + 30.0


def _create_celery_app(settings: Settings) -> Celery:
    app = Celery(
        "jvmscope",
        broker=settings.REDIS_URL,
        backend=settings.REDIS_URL,
        include=["jvmscope.tasks.plugin_tasks"],
    )
    soft_limit, hard_limit = _prune_time_limits(settings)

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        result_expires=_RESULT_EXPIRES_SECONDS,
        timezone="UTC",
        enable_utc=True,
        task_default_queue=DISCOVERY_QUEUE,
        task_routes={PRUNE_TASK_NAME: {"queue": DISCOVERY_QUEUE}},
        task_annotations={
            PRUNE_TASK_NAME: {
                "soft_time_limit": soft_limit,
                "time_limit": hard_limit,
            },
        },
        # A worker lost mid-prune leaves nothing half applied; each plugin
        # removal is its own transaction.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_hijack_root_logger=False,
        broker_connection_retry_on_startup=True,
        beat_schedule={
            "prune-discovery-plugins": {
                "task": PRUNE_TASK_NAME,
                "schedule": settings.PLUGIN_PING_PERIOD_SECONDS,
                "options": {"expires": settings.PLUGIN_PING_PERIOD_SECONDS},
            },
        },
    )
    return app


celery: Celery = _create_celery_app(get_settings())
