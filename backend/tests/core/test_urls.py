"""
Tests for connect-URL helpers.
"""

from __future__ import annotations

import pytest

from jvmscope.core.urls import (
    create_service_url,
    get_rmi_target,
    host_and_port,
    is_agent_url,
    sanitize_connect_url,
)


def test_service_url_for_host_and_port() -> None:
    assert create_service_url("app", 9091) == "service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi"


def test_ipv6_hosts_are_bracketed_once() -> None:
    expected = "service:jmx:rmi:///jndi/rmi://[fd00::1]:9091/jmxrmi"

    assert create_service_url("fd00::1", 9091) == expected
    assert create_service_url("[fd00::1]", 9091) == expected


@pytest.mark.parametrize("host, port", [("", 9091), ("app", 0), ("app", 70000)])
def test_invalid_host_or_port_is_rejected(host: str, port: int) -> None:
    with pytest.raises(ValueError):
        create_service_url(host, port)


def test_host_port_shorthand_is_expanded() -> None:
    assert sanitize_connect_url(" localhost:9091 ") == create_service_url("localhost", 9091)


def test_urls_with_a_scheme_are_kept() -> None:
    url = "service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi"

    assert sanitize_connect_url(url) == url
    assert sanitize_connect_url("https://agent:8443/") == "https://agent:8443/"


@pytest.mark.parametrize("raw", ["", "   ", "just-a-host"])
def test_unusable_connect_urls_are_rejected(raw: str) -> None:
    with pytest.raises(ValueError):
        sanitize_connect_url(raw)


def test_rmi_target_is_extracted() -> None:
    assert get_rmi_target("service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi") == ("app", 9091)
    assert get_rmi_target(create_service_url("fd00::1", 9091)) == ("fd00::1", 9091)
    with pytest.raises(ValueError):
        get_rmi_target("https://agent:8443/")


def test_host_and_port_of_other_url_forms() -> None:
    assert host_and_port("service:jmx:jmxmp://app:7091") == ("app", 7091)
    assert host_and_port("https://agent:8443/") == ("agent", 8443)
    assert host_and_port("http://agent/") == ("agent", 80)


def test_agent_urls_are_recognised() -> None:
    assert is_agent_url("https://agent:8443/")
    assert not is_agent_url("service:jmx:rmi:///jndi/rmi://app:9091/jmxrmi")
