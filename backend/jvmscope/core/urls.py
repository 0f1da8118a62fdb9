"""
Connect-URL helpers.

Targets are identified by their connect URL, which is either a JMX service
URL (``service:jmx:rmi:///jndi/rmi://host:port/jmxrmi``) or an agent HTTP
callback (``https://host:port/``).  These helpers build, normalise and take
apart such URLs without touching the network.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# ── Constants ────────────────────────────────────────────────────────────────

HOST_PORT_PAIR_PATTERN: re.Pattern[str] = re.compile(r"^([^:\s]+)(?::(\d{1,5}))$")

_JNDI_PATTERN: re.Pattern[str] = re.compile(
    r"^service:jmx:rmi://[^/]*/jndi/(?P<inner>rmi://.+)$"
)
_JMX_DIRECT_PATTERN: re.Pattern[str] = re.compile(
    r"^service:jmx:(?P<protocol>[a-z0-9+.-]+)://(?P<authority>[^/]+)(?P<path>/.*)?$",
    re.IGNORECASE,
)

AGENT_SCHEMES: frozenset[str] = frozenset({"http", "https", "cryostat-agent"})


# ── Builders ─────────────────────────────────────────────────────────────────

def create_service_url(host: str, port: int) -> str:
    """Return the standard RMI-registry JMX service URL for *host*:*port*.

    IPv6 literals are wrapped in brackets when they are not already.
    """
    if not host:
        raise ValueError("Host must not be empty.")
    if not 0 < int(port) < 65536:
        raise ValueError(f"Port {port} is out of range.")
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"service:jmx:rmi:///jndi/rmi://{host}:{int(port)}/jmxrmi"


def sanitize_connect_url(raw: str) -> str:
    """Normalise a user-supplied connect URL.

    A bare ``host:port`` pair is expanded into a JMX service URL; anything
    else must already carry a scheme.

    Raises:
        ValueError: If the input is blank or has no scheme.
    """
    if raw is None or not raw.strip():
        raise ValueError("Connect URL must not be empty.")
    cleaned = raw.strip()
    match = HOST_PORT_PAIR_PATTERN.match(cleaned)
    if match:
        return create_service_url(match.group(1), int(match.group(2)))
    if ":" not in cleaned:
        raise ValueError(f"Connect URL '{cleaned}' has no scheme.")
    return cleaned


# ── Parsers ──────────────────────────────────────────────────────────────────

def get_rmi_target(url: str) -> tuple[str, int]:
    """Return the RMI registry ``(host, port)`` embedded in a JNDI service URL.

    Raises:
        ValueError: If *url* is not of the ``/jndi/rmi://`` form.
    """
    match = _JNDI_PATTERN.match(url)
    if not match:
        raise ValueError(f"'{url}' is not a JNDI RMI service URL.")
    inner = urlsplit(match.group("inner"))
    if not inner.hostname or inner.port is None:
        raise ValueError(f"'{url}' has no RMI host or port.")
    return inner.hostname, inner.port


def host_and_port(url: str) -> tuple[str, int]:
    """Best-effort extraction of ``(host, port)`` from any supported connect URL.

    Raises:
        ValueError: If no host and port can be determined.
    """
    try:
        return get_rmi_target(url)
    except ValueError:
        pass

    direct = _JMX_DIRECT_PATTERN.match(url)
    if direct:
        authority = urlsplit(f"//{direct.group('authority')}")
        if authority.hostname and authority.port is not None:
            return authority.hostname, authority.port
        raise ValueError(f"'{url}' has no host or port.")

    parts = urlsplit(url)
    if parts.hostname:
        port = parts.port
        if port is None:
            port = 443 if parts.scheme == "https" else 80
        return parts.hostname, port
    raise ValueError(f"'{url}' has no host or port.")


def is_agent_url(url: str) -> bool:
    """Return ``True`` when *url* points at an agent HTTP callback rather than JMX."""
    return urlsplit(url).scheme.lower() in AGENT_SCHEMES
