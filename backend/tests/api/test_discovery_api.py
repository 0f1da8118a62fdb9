"""
Tests for the discovery tree and plugin protocol endpoints.

Covers the ``/api/v1/discovery`` and ``/api/v1/discovery_plugins`` routes:
registration, token-protected publication and deregistration, and the
error mapping of the plugin protocol.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient

CALLBACK = "http://plugin.local:8080/callback"
URL_1 = "service:jmx:rmi:///jndi/rmi://one:9091/jmxrmi"

SUBTREE = [
    {
        "name": "zone-a",
        "nodeType": "Environment",
        "children": [
            {
                "name": URL_1,
                "nodeType": "JVM",
                "target": {"connectUrl": URL_1, "alias": "one", "labels": [{"key": "app", "value": "one"}]},
            }
        ],
    }
]


@pytest_asyncio.fixture()
async def registration(client: AsyncClient, alive_callbacks) -> dict:
    alive_callbacks.add(CALLBACK)
    response = await client.post(
        "/api/v1/discovery/",
        json={"realm": "my-plugin", "callback": CALLBACK},
    )
    assert response.status_code == 200
    return response.json()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# GET /discovery/
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tree_starts_with_builtin_realms(client: AsyncClient) -> None:
    response = await client.get("/api/v1/discovery/")

    assert response.status_code == 200
    tree = response.json()
    assert tree["nodeType"] == "Universe"
    assert [(c["name"], c["nodeType"], c["children"]) for c in tree["children"]] == [
        ("Custom Targets", "Realm", [])
    ]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_register_returns_id_and_token(registration: dict) -> None:
    assert uuid.UUID(registration["id"])
    assert len(registration["token"].split(".")) == 5


@pytest.mark.asyncio
async def test_register_with_unreachable_callback(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/discovery/",
        json={"realm": "my-plugin", "callback": "http://unreachable.local/cb"},
    )

    assert response.status_code == 400
    assert "did not respond" in response.json()["detail"]


@pytest.mark.asyncio
async def test_register_with_credential_without_password(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/discovery/",
        json={"realm": "my-plugin", "callback": "http://user@plugin.local/cb"},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_refresh_with_bad_token_is_unauthorised(client: AsyncClient, registration: dict) -> None:
    response = await client.post(
        "/api/v1/discovery/",
        json={"realm": "my-plugin", "callback": CALLBACK, "id": registration["id"], "token": "bogus"},
    )

    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Publication
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_publish_with_bearer_token(client: AsyncClient, registration: dict, recorder) -> None:
    response = await client.post(
        f"/api/v1/discovery/{registration['id']}",
        json=SUBTREE,
        headers=_bearer(registration["token"]),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == registration["id"]
    assert body["children"][0]["name"] == "zone-a"
    assert recorder.kinds() == [("FOUND", URL_1)]

    tree = (await client.get("/api/v1/discovery/")).json()
    realm = next(c for c in tree["children"] if c["name"] == "my-plugin")
    leaf = realm["children"][0]["children"][0]
    assert leaf["target"]["labels"] == [{"key": "app", "value": "one"}]


@pytest.mark.asyncio
async def test_publish_with_token_query_parameter(client: AsyncClient, registration: dict) -> None:
    response = await client.post(
        f"/api/v1/discovery/{registration['id']}",
        params={"token": registration["token"]},
        json=[],
    )

    assert response.status_code == 200
    assert response.json()["children"] == []


@pytest.mark.asyncio
async def test_publish_without_token_is_unauthorised(client: AsyncClient, registration: dict) -> None:
    response = await client.post(f"/api/v1/discovery/{registration['id']}", json=SUBTREE)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_publish_to_unknown_plugin(client: AsyncClient, registration: dict) -> None:
    response = await client.post(
        f"/api/v1/discovery/{uuid.uuid4()}",
        json=SUBTREE,
        headers=_bearer(registration["token"]),
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_publish_conflicting_target(client: AsyncClient, registration: dict) -> None:
    created = await client.post("/api/v1/targets/", json={"connectUrl": URL_1, "alias": "manual"})
    assert created.status_code == 201

    response = await client.post(
        f"/api/v1/discovery/{registration['id']}",
        json=SUBTREE,
        headers=_bearer(registration["token"]),
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_publish_with_blank_alias_is_rejected(client: AsyncClient, registration: dict) -> None:
    subtree = [{"name": URL_1, "nodeType": "JVM", "target": {"connectUrl": URL_1, "alias": "  "}}]

    response = await client.post(
        f"/api/v1/discovery/{registration['id']}",
        json=subtree,
        headers=_bearer(registration["token"]),
    )

    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Deregistration and plugin records
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deregister_with_token(client: AsyncClient, registration: dict) -> None:
    plugin_url = f"/api/v1/discovery/{registration['id']}"

    response = await client.delete(plugin_url, headers=_bearer(registration["token"]))

    assert response.status_code == 200
    assert response.json()["realm"]["name"] == "my-plugin"
    missing = await client.get(f"/api/v1/discovery_plugins/{registration['id']}")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_deregister_builtin_is_forbidden(client: AsyncClient) -> None:
    plugins = (await client.get("/api/v1/discovery_plugins/", params={"realm": "Custom Targets"})).json()
    assert len(plugins) == 1 and plugins[0]["builtin"] is True

    response = await client.delete(f"/api/v1/discovery/{plugins[0]['id']}")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_deregister_unknown_plugin(client: AsyncClient) -> None:
    response = await client.delete(f"/api/v1/discovery/{uuid.uuid4()}")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_plugin_records_are_listed(client: AsyncClient, registration: dict) -> None:
    response = await client.get("/api/v1/discovery_plugins/")

    assert response.status_code == 200
    realms = sorted(plugin["realm"]["name"] for plugin in response.json())
    assert realms == ["Custom Targets", "my-plugin"]
    record = (await client.get(f"/api/v1/discovery_plugins/{registration['id']}")).json()
    assert record["callback"] == CALLBACK
    assert "children" not in record["realm"]
