"""
Logging for JvmScope.

Every line carries ``action=`` and ``target=`` fields.  ``action`` names what
happened (``target_found``, ``plugin_registered``, ``observe_failed``...) and
``target`` names what it happened to: a connect URL, a realm, a plugin id or
a reconciliation scope key such as ``KubernetesApi/my-namespace``.

Usage::

    from jvmscope.core.logging import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("Target found", extra={"action": "target_found", "target": url})
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from jvmscope.config import get_settings

# ── Constants ────────────────────────────────────────────────────────────────

ROOT_LOGGER_NAME: str = "jvmscope"

_LINE_FORMAT: str = (
    "%(asctime)s %(levelname)-7s [%(name)s] "
    "action=%(action)s target=%(target)s %(message)s"
)
_DATE_FORMAT: str = "%Y-%m-%dT%H:%M:%S%z"
_MISSING: str = "-"

# Client libraries that log every request at INFO or DEBUG.
_QUIET_LOGGERS: tuple[str, ...] = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "celery",
    "kubernetes.client.rest",
    "urllib3.connectionpool",
    "httpx",
)


class StructuredFormatter(logging.Formatter):
    """Render ``action`` and ``target`` on every record.

    Records logged without them (third-party code, bare ``logger.info``
    calls) get ``-``.  Non-string targets such as plugin UUIDs are
    stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.action = getattr(record, "action", None) or _MISSING
        target = getattr(record, "target", None)
        record.target = _MISSING if target in (None, "") else str(target)
        return super().format(record)


def _resolve_level(level: Optional[str]) -> str:
    settings = get_settings()
    if level:
        return level.upper()
    if settings.LOG_LEVEL:
        return settings.LOG_LEVEL.upper()
    return "DEBUG" if settings.DEBUG else "INFO"


def configure_logging(level: Optional[str] = None) -> None:
    """Install the structured handler on the ``jvmscope`` logger.

    Safe to call more than once; later calls only adjust the level.

    Args:
        level: Explicit level name.  Falls back to ``LOG_LEVEL``, then to
            ``DEBUG`` or ``INFO`` depending on ``DEBUG``.
    """
    resolved = _resolve_level(level)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(resolved)

    handler = next(
        (h for h in root.handlers if isinstance(h.formatter, StructuredFormatter)),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter(_LINE_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)
    handler.setLevel(resolved)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.debug(
        "Logging configured",
        extra={"action": "logging_init", "target": resolved},
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger below ``jvmscope``.

    Module names already rooted at ``jvmscope`` (the usual ``__name__``)
    are used as-is; anything else is nested under it.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
