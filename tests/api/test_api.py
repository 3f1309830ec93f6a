from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from gymbook.core.database import utc_now
from gymbook.core.jwt_auth import jwt_manager
from gymbook.main import app


def _auth(principal):
    token = jwt_manager.create_access_token(principal.user_id, principal.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _session_payload(world, start_at, room=None):
    return {
        "gym_id": world.gym.id,
        "room_id": (room or world.room).id,
        "class_type_id": world.class_type.id,
        "start_at": start_at.isoformat(),
        "end_at": (start_at + timedelta(hours=1)).isoformat(),
        "capacity": 5,
    }


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_requires_bearer_token(client, world):
    response = await client.get("/api/v1/tokens/wallet", params={"gym_id": world.gym.id})
    assert response.status_code in (401, 403)

    response = await client.get(
        "/api/v1/tokens/wallet",
        params={"gym_id": world.gym.id},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert response.status_code == 401


async def test_booking_flow(client, world, make_student):
    student = await make_student(tokens=10)
    start_at = utc_now().replace(microsecond=0) + timedelta(days=3)

    response = await client.post(
        "/api/v1/sessions/",
        json=_session_payload(world, start_at),
        headers=_auth(world.professor),
    )
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "SCHEDULED"
    assert created["available_spots"] == 5

    response = await client.post(
        "/api/v1/bookings/",
        json={"session_id": created["id"]},
        headers=_auth(student),
    )
    assert response.status_code == 201
    result = response.json()
    assert result["kind"] == "booked"
    booking_id = result["booking"]["id"]

    response = await client.get(
        "/api/v1/tokens/wallet", params={"gym_id": world.gym.id}, headers=_auth(student)
    )
    assert response.status_code == 200
    assert response.json()["wallet"]["balance"] == 9

    response = await client.post(
        f"/api/v1/bookings/{booking_id}/cancel",
        json={"reason": "Travelling"},
        headers=_auth(student),
    )
    assert response.status_code == 200
    assert response.json()["refunded"] is True
    assert response.json()["booking"]["status"] == "CANCELLED"

    response = await client.get(
        "/api/v1/tokens/wallet", params={"gym_id": world.gym.id}, headers=_auth(student)
    )
    assert response.json()["wallet"]["balance"] == 10


async def test_error_mapping(client, world, make_student):
    student = await make_student(tokens=0)
    start_at = utc_now().replace(microsecond=0) + timedelta(days=3)

    response = await client.post(
        "/api/v1/bookings/", json={"session_id": 999999}, headers=_auth(student)
    )
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"

    response = await client.post(
        "/api/v1/sessions/",
        json=_session_payload(world, start_at),
        headers=_auth(world.professor),
    )
    assert response.status_code == 201
    existing_id = response.json()["id"]

    response = await client.post(
        "/api/v1/sessions/",
        json=_session_payload(world, start_at + timedelta(minutes=30)),
        headers=_auth(world.professor),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "SCHEDULE_CONFLICT"
    assert body["details"]["conflicting_session_id"] == existing_id

    response = await client.post(
        "/api/v1/bookings/", json={"session_id": existing_id}, headers=_auth(student)
    )
    assert response.status_code == 402
    assert response.json()["error"] == "INSUFFICIENT_BALANCE"

    response = await client.post(
        "/api/v1/tokens/assign",
        json={"user_id": student.user_id, "gym_id": world.gym.id, "tokens": 5},
        headers=_auth(student),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "PERMISSION_DENIED"


async def test_delete_session_endpoint(client, world, make_student):
    student = await make_student(tokens=1)
    start_at = utc_now().replace(microsecond=0) + timedelta(days=3)

    response = await client.post(
        "/api/v1/sessions/",
        json=_session_payload(world, start_at),
        headers=_auth(world.professor),
    )
    session_id = response.json()["id"]

    response = await client.delete(f"/api/v1/sessions/{session_id}", headers=_auth(student))
    assert response.status_code == 403

    response = await client.post(
        "/api/v1/bookings/", json={"session_id": session_id}, headers=_auth(student)
    )
    booking_id = response.json()["booking"]["id"]

    response = await client.delete(
        f"/api/v1/sessions/{session_id}", headers=_auth(world.professor)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATE"

    await client.post(
        f"/api/v1/bookings/{booking_id}/cancel",
        json={"reason": "Travelling"},
        headers=_auth(student),
    )
    response = await client.delete(
        f"/api/v1/sessions/{session_id}", headers=_auth(world.professor)
    )
    assert response.status_code == 204

    response = await client.get(
        f"/api/v1/sessions/{session_id}", headers=_auth(world.professor)
    )
    assert response.status_code == 404
