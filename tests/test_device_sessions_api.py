"""
Tests for the device session API endpoints.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from tableside.models.device_session import utcnow
from tableside.schemas.device_session import ChangeEvent, DeviceSessionCreate, DeviceSessionRead
from tableside.services.device_session import DeviceSessionService
from tableside.services.identity import mint_session_token

HEADER = "x-session-token"


def _payload(restaurant_id, ip="203.0.113.10", is_main=False, **extra):
    payload = {
        "session_token": mint_session_token(ip),
        "device_ip": ip,
        "restaurant_id": str(restaurant_id),
        "table_number": "3",
        "is_main_device": is_main,
        "order_data": [],
    }
    payload.update(extra)
    return payload


async def _create(client: AsyncClient, payload):
    response = await client.post(
        "/api/device-sessions",
        json=payload,
        headers={HEADER: payload["session_token"]},
    )
    assert response.status_code == 201
    return response.json()


async def _insert_expired(session_factory, restaurant_id):
    payload = _payload(restaurant_id, ip="203.0.113.50")
    async with session_factory() as db:
        await DeviceSessionService.create(
            db,
            DeviceSessionCreate(**payload),
            payload["session_token"],
            now=utcnow() - timedelta(hours=3),
        )


@pytest.mark.asyncio
async def test_health_check(async_client: AsyncClient):
    """Test the health check endpoints."""
    response = await async_client.get("/api/health/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "change_feed": "local"}

    response = await async_client.get("/api/health/db")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "connected", "active_sessions": 0}


@pytest.mark.asyncio
async def test_health_counts_active_sessions(async_client: AsyncClient, session_factory, restaurant_id):
    """Test that the database health check counts only unexpired sessions."""
    await _create(async_client, _payload(restaurant_id, ip="203.0.113.1", is_main=True))
    await _create(async_client, _payload(restaurant_id, ip="203.0.113.2"))
    await _insert_expired(session_factory, restaurant_id)

    response = await async_client.get("/api/health/db")

    assert response.json()["active_sessions"] == 2


@pytest.mark.asyncio
async def test_create_and_list_sessions(async_client: AsyncClient, restaurant_id):
    """Test creating sessions and listing a table."""
    main = await _create(async_client, _payload(restaurant_id, ip="203.0.113.1", is_main=True))
    guest = await _create(async_client, _payload(restaurant_id, ip="203.0.113.2"))

    response = await async_client.get(
        "/api/device-sessions",
        params={"restaurant_id": str(restaurant_id), "table_number": "3"},
    )

    assert response.status_code == 200
    rows = response.json()
    assert [row["id"] for row in rows] == [main["id"], guest["id"]]
    assert rows[0]["is_main_device"] is True
    assert "X-Content-Type-Options" in response.headers


@pytest.mark.asyncio
async def test_create_requires_token_header(async_client: AsyncClient, restaurant_id):
    """Test that writes without a token or with a foreign token are refused."""
    payload = _payload(restaurant_id)

    response = await async_client.post("/api/device-sessions", json=payload)
    assert response.status_code == 401

    response = await async_client.post(
        "/api/device-sessions",
        json=payload,
        headers={HEADER: mint_session_token("203.0.113.99")},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_duplicate_token_conflicts(async_client: AsyncClient, restaurant_id):
    """Test that a token can only be registered once."""
    payload = _payload(restaurant_id)
    await _create(async_client, payload)

    response = await async_client.post(
        "/api/device-sessions",
        json=payload,
        headers={HEADER: payload["session_token"]},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_create_rejects_malformed_order_data(async_client: AsyncClient, restaurant_id):
    """Test that invalid cart lines are rejected at the boundary."""
    payload = _payload(
        restaurant_id,
        order_data=[{"id": "m-1", "name": "Burger", "price": 12.0, "quantity": 0}],
    )

    response = await async_client.post(
        "/api/device-sessions",
        json=payload,
        headers={HEADER: payload["session_token"]},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_ignores_client_expiry(async_client: AsyncClient, restaurant_id):
    """Test that the server sets the expiry regardless of what the client sends."""
    payload = _payload(restaurant_id, expires_at="2099-01-01T00:00:00+00:00")

    created = DeviceSessionRead.model_validate(await _create(async_client, payload))

    assert created.expires_at - created.created_at == timedelta(hours=2)


@pytest.mark.asyncio
async def test_update_own_session(async_client: AsyncClient, feed, restaurant_id):
    """Test patching order data on the caller's own row."""
    created = await _create(async_client, _payload(restaurant_id, is_main=True))
    token = created["session_token"]
    changes = []

    async def handler(change):
        changes.append(change)

    await feed.subscribe(restaurant_id, "3", handler)

    response = await async_client.patch(
        "/api/device-sessions",
        params={"session_token": token},
        json={"order_data": [{"id": "m-1", "name": "Burger", "price": 12.0, "quantity": 2}]},
        headers={HEADER: token},
    )
    await feed.drain()

    assert response.status_code == 200
    body = response.json()
    assert body["order_data"][0]["quantity"] == 2
    assert body["is_main_device"] is True
    assert [change.event for change in changes] == [ChangeEvent.UPDATE]


@pytest.mark.asyncio
async def test_update_other_session_is_forbidden(async_client: AsyncClient, restaurant_id):
    """Test that a device cannot demote another device."""
    main = await _create(async_client, _payload(restaurant_id, ip="203.0.113.1", is_main=True))
    guest = await _create(async_client, _payload(restaurant_id, ip="203.0.113.2"))

    response = await async_client.patch(
        "/api/device-sessions",
        params={"session_token": main["session_token"]},
        json={"is_main_device": False},
        headers={HEADER: guest["session_token"]},
    )
    assert response.status_code == 403

    response = await async_client.patch(
        "/api/device-sessions",
        params={"session_token": "missing"},
        json={"is_main_device": True},
        headers={HEADER: "missing"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_session(async_client: AsyncClient, restaurant_id):
    """Test deleting the caller's own row."""
    created = await _create(async_client, _payload(restaurant_id))
    token = created["session_token"]

    response = await async_client.delete(
        "/api/device-sessions",
        params={"session_token": token},
        headers={HEADER: "someone-else"},
    )
    assert response.status_code == 403

    response = await async_client.delete(
        "/api/device-sessions",
        params={"session_token": token},
        headers={HEADER: token},
    )
    assert response.status_code == 204

    response = await async_client.delete(
        "/api/device-sessions",
        params={"session_token": token},
        headers={HEADER: token},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_transfer_main_rpc(async_client: AsyncClient, restaurant_id):
    """Test the transfer procedure over HTTP."""
    main = await _create(async_client, _payload(restaurant_id, ip="203.0.113.1", is_main=True))
    guest = await _create(async_client, _payload(restaurant_id, ip="203.0.113.2"))
    body = {
        "old_session_token": main["session_token"],
        "new_session_token": guest["session_token"],
    }

    response = await async_client.post(
        "/api/rpc/transfer-main", json=body, headers={HEADER: main["session_token"]}
    )
    assert response.status_code == 403

    response = await async_client.post(
        "/api/rpc/transfer-main", json=body, headers={HEADER: guest["session_token"]}
    )
    assert response.status_code == 200
    assert response.json() == {"transferred": True}

    response = await async_client.post(
        "/api/rpc/transfer-main", json=body, headers={HEADER: guest["session_token"]}
    )
    assert response.json() == {"transferred": False}

    rows = (
        await async_client.get(
            "/api/device-sessions",
            params={"restaurant_id": str(restaurant_id), "table_number": "3"},
        )
    ).json()
    assert [row["is_main_device"] for row in rows] == [False, True]


@pytest.mark.asyncio
async def test_transfer_main_rpc_across_tables_is_refused(async_client: AsyncClient, restaurant_id):
    """Test that main status cannot move to a session at another table."""
    other_main = await _create(
        async_client, _payload(restaurant_id, ip="203.0.113.7", is_main=True, table_number="5")
    )
    await _create(async_client, _payload(restaurant_id, ip="203.0.113.1", is_main=True))
    guest = await _create(async_client, _payload(restaurant_id, ip="203.0.113.2"))

    response = await async_client.post(
        "/api/rpc/transfer-main",
        json={
            "old_session_token": other_main["session_token"],
            "new_session_token": guest["session_token"],
        },
        headers={HEADER: guest["session_token"]},
    )

    assert response.status_code == 200
    assert response.json() == {"transferred": False}
    for table, mains in (("3", [True, False]), ("5", [True])):
        rows = (
            await async_client.get(
                "/api/device-sessions",
                params={"restaurant_id": str(restaurant_id), "table_number": table},
            )
        ).json()
        assert [row["is_main_device"] for row in rows] == mains


@pytest.mark.asyncio
async def test_cleanup_expired_rpc(async_client: AsyncClient, session_factory, restaurant_id):
    """Test the cleanup procedure over HTTP."""
    await _insert_expired(session_factory, restaurant_id)
    await _create(async_client, _payload(restaurant_id, ip="203.0.113.5"))

    response = await async_client.post("/api/rpc/cleanup-expired")

    assert response.status_code == 200
    assert response.json() == {"deleted": 1}
