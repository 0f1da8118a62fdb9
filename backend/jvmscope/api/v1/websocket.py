"""
WebSocket relay for live discovery events.

Clients connect to ``/ws/discovery`` and receive every committed
FOUND / MODIFIED / LOST event.  The handler subscribes to the Redis Pub/Sub
channel the :class:`~jvmscope.core.events.RedisNotifier` publishes to and
forwards each message to the connected client.

Message format (server -> client)::

    {
        "event": "FOUND",
        "target": {
            "connectUrl": "service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi",
            "alias": "app",
            "realm": "KubernetesApi",
            ...
        },
        "timestamp": "2026-02-23T14:30:05+00:00"
    }
"""

from __future__ import annotations

import asyncio
import json

import redis.asyncio as aioredis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jvmscope.config import get_settings
from jvmscope.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_POLL_INTERVAL_SECONDS: float = 0.1

# ---------------------------------------------------------------------------
# Redis helpers
# ---------------------------------------------------------------------------


def _get_redis_client() -> aioredis.Redis:
    """Create an async Redis client for ``REDIS_URL``.

    The caller is responsible for closing it.
    """
    return aioredis.from_url(get_settings().REDIS_URL, decode_responses=True)


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------


@router.websocket("/ws/discovery")
async def discovery_websocket(websocket: WebSocket) -> None:
    """Accept a WebSocket connection and stream discovery events.

    1. Accept the handshake.
    2. Subscribe to the notification channel.
    3. Relay channel messages while watching for client disconnection.
    4. Unsubscribe and close both sides on exit.
    """
    await websocket.accept()
    channel = get_settings().NOTIFICATION_CHANNEL
    logger.info(
        "WebSocket connected",
        extra={"action": "ws_connected", "target": channel},
    )

    redis_client = None
    pubsub = None

    try:
        redis_client = _get_redis_client()
        pubsub = redis_client.pubsub()
        await pubsub.subscribe(channel)

        await asyncio.gather(
            _relay_redis_to_ws(pubsub, websocket),
            _listen_for_ws_disconnect(websocket),
        )

    except WebSocketDisconnect:
        logger.info(
            "WebSocket disconnected",
            extra={"action": "ws_disconnected", "target": channel},
        )

    except asyncio.CancelledError:
        logger.info(
            "WebSocket task cancelled",
            extra={"action": "ws_cancelled", "target": channel},
        )

    except Exception:
        logger.exception(
            "WebSocket relay failed",
            extra={"action": "ws_error", "target": channel},
        )

    finally:
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception:
                logger.debug("Error closing pubsub", exc_info=True)

        if redis_client is not None:
            try:
                await redis_client.aclose()
            except Exception:
                logger.debug("Error closing Redis", exc_info=True)

        try:
            await websocket.close()
        except Exception:
            pass


# ---------------------------------------------------------------------------
# Internal coroutines
# ---------------------------------------------------------------------------


async def _relay_redis_to_ws(pubsub, websocket: WebSocket) -> None:  # type: ignore[no-untyped-def]
    """Forward channel messages to the WebSocket as JSON text frames.

    Subscribe/unsubscribe control messages are ignored.
    """
    while True:
        message = await pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=_POLL_INTERVAL_SECONDS,
        )

        if message is not None and message.get("type") == "message":
            raw_data = message.get("data", "")
            try:
                payload = json.dumps(json.loads(raw_data))
            except (json.JSONDecodeError, TypeError):
                payload = json.dumps({"event": "raw", "data": str(raw_data)})
            await websocket.send_text(payload)
        else:
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)


async def _listen_for_ws_disconnect(websocket: WebSocket) -> None:
    """Block until the client disconnects.  Client messages are discarded.

    Raises:
        WebSocketDisconnect: When the client disconnects.
    """
    while True:
        await websocket.receive_text()
