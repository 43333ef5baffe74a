"""Tests de los endpoints /api/v1/sync."""

import pytest
from httpx import ASGITransport, AsyncClient

from studysync.main import app

PREFIX = "/api/v1/sync"


@pytest.mark.asyncio
async def test_health(client):
    ac, _ = client
    response = await ac.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["sync_state"] is None


@pytest.mark.asyncio
async def test_enqueue_mutation_returns_accepted(client):
    ac, engine = client

    response = await ac.post(f"{PREFIX}/mutations", json={
        "operation": "create",
        "collection_path": "users/u-1/tasks",
        "entity_id": "temp-abc",
        "data": {"title": "Leer capítulo 3"},
    })

    assert response.status_code == 202
    body = response.json()
    assert body["entity_id"] == "temp-abc"
    assert body["attempts"] == 0

    status_response = await ac.get(f"{PREFIX}/status")
    assert status_response.json()["pending_changes"] == 1
    assert status_response.json()["sync_state"] == "offline"
    assert len(engine.queue) == 1


@pytest.mark.asyncio
async def test_update_without_data_is_rejected(client):
    ac, engine = client

    response = await ac.post(f"{PREFIX}/mutations", json={
        "operation": "update",
        "collection_path": "tasks",
        "entity_id": "t-1",
    })

    assert response.status_code == 422
    assert len(engine.queue) == 0


@pytest.mark.asyncio
async def test_unknown_operation_is_rejected(client):
    ac, _ = client

    response = await ac.post(f"{PREFIX}/mutations", json={
        "operation": "upsert",
        "collection_path": "tasks",
        "entity_id": "t-1",
        "data": {},
    })

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_queue_item_lookup(client):
    ac, _ = client
    created = await ac.post(f"{PREFIX}/mutations", json={
        "operation": "delete",
        "collection_path": "sessions",
        "entity_id": "s-1",
    })
    item_id = created.json()["id"]

    found = await ac.get(f"{PREFIX}/queue/{item_id}")
    missing = await ac.get(f"{PREFIX}/queue/no-existe")

    assert found.status_code == 200
    assert found.json()["operation"] == "delete"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_going_online_drains_queue(client, settle):
    ac, engine = client
    await ac.post(f"{PREFIX}/mutations", json={
        "operation": "create",
        "collection_path": "tasks",
        "entity_id": "temp-xyz",
        "data": {"title": "x"},
    })

    response = await ac.put(f"{PREFIX}/connectivity", json={"online": True})
    assert response.status_code == 200
    await settle(engine)

    status_response = await ac.get(f"{PREFIX}/status")
    assert status_response.json()["pending_changes"] == 0
    assert status_response.json()["sync_state"] == "idle"

    mappings = (await ac.get(f"{PREFIX}/mappings")).json()
    assert mappings[0]["temporary_id"] == "temp-xyz"

    queue = (await ac.get(f"{PREFIX}/queue")).json()
    assert queue["items"] == []


@pytest.mark.asyncio
async def test_retry_endpoint_reports_counts(client):
    ac, _ = client

    response = await ac.post(f"{PREFIX}/retry")

    assert response.status_code == 200
    assert response.json() == {"succeeded": 0, "remaining": 0}


@pytest.mark.asyncio
async def test_engine_not_started_returns_503():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get(f"{PREFIX}/status")

    assert response.status_code == 503
