"""
Tests for the target inventory and custom target endpoints.
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from jvmscope.core.urls import create_service_url

LOCAL_URL = create_service_url("localhost", 9091)


@pytest.mark.asyncio
async def test_list_targets_empty(client: AsyncClient) -> None:
    response = await client.get("/api/v1/targets/")

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_create_and_list_target(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/targets/",
        json={"connectUrl": "localhost:9091", "alias": "inventory"},
    )

    assert response.status_code == 201
    assert response.json()["connectUrl"] == LOCAL_URL
    listed = (await client.get("/api/v1/targets/")).json()
    assert [target["alias"] for target in listed] == ["inventory"]


@pytest.mark.asyncio
async def test_create_duplicate_conflicts(client: AsyncClient) -> None:
    payload = {"connectUrl": "localhost:9091", "alias": "inventory"}
    await client.post("/api/v1/targets/", json=payload)

    response = await client.post("/api/v1/targets/", json=payload)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_create_unreachable_target(client: AsyncClient, probe) -> None:
    probe.reachable = False

    response = await client.post("/api/v1/targets/", json={"connectUrl": "localhost:9091", "alias": "inventory"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_blank_alias_is_a_bad_request(client: AsyncClient) -> None:
    response = await client.post("/api/v1/targets/", json={"connectUrl": "localhost:9091", "alias": "  "})

    assert response.status_code == 400
    assert "alias" in response.json()["detail"]
    assert (await client.get("/api/v1/targets/")).json() == []


@pytest.mark.asyncio
async def test_create_malformed_url(client: AsyncClient) -> None:
    response = await client.post("/api/v1/targets/", json={"connectUrl": "nohost", "alias": "inventory"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_dryrun_persists_nothing(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/targets/",
        params={"dryrun": "true"},
        json={"connectUrl": "localhost:9091", "alias": "inventory"},
    )

    assert response.status_code == 201
    assert response.json()["id"] is None
    assert (await client.get("/api/v1/targets/")).json() == []


@pytest.mark.asyncio
async def test_delete_target(client: AsyncClient) -> None:
    created = (
        await client.post("/api/v1/targets/", json={"connectUrl": "localhost:9091", "alias": "inventory"})
    ).json()

    response = await client.delete(f"/api/v1/targets/{created['id']}")
    assert response.status_code == 200

    again = await client.delete(f"/api/v1/targets/{created['id']}")
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_health_lists_running_backends(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["backends"] == []
    assert response.headers["X-Content-Type-Options"] == "nosniff"
