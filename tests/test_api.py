"""
HTTP API tests (httpx AsyncClient over ASGITransport)
"""
from uuid import uuid4

import pytest

from smartpark.models import DeviceEvent, SlotStatus

from conftest import ADMIN, DRIVER_A, DRIVER_B, auth_headers, count_events, count_reservations


class TestReservationEndpoints:

    @pytest.mark.asyncio
    async def test_unauthenticated_create_rejected(self, client, services, slot):
        response = await client.post("/reservations/create", json={"slot_id": str(slot.id)})

        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_ERROR"
        assert await count_reservations(services) == 0
        assert (await services.slots.get_slot(slot.id)).status == SlotStatus.AVAILABLE.value

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, client, slot):
        response = await client.post(
            "/reservations/create",
            json={"slot_id": str(slot.id)},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_create_then_conflict(self, client, settings, services, slot):
        created = await client.post(
            "/reservations/create",
            json={"slot_id": str(slot.id), "expires_in_minutes": 30},
            headers=auth_headers(settings, DRIVER_A),
        )
        conflict = await client.post(
            "/reservations/create",
            json={"slot_id": str(slot.id)},
            headers=auth_headers(settings, DRIVER_B),
        )

        assert created.status_code == 201
        data = created.json()["data"]
        assert data["status"] == "active"
        assert data["user_id"] == DRIVER_A.user_id
        assert data["slot_code"] == "A-01"
        assert conflict.status_code == 409
        assert conflict.json()["message"] == "slot already reserved"
        assert await count_reservations(services) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"slot_id": "not-a-uuid"},
        {"slot_id": None},
        {},
        {"slot_id": "00000000-0000-0000-0000-000000000001", "expires_in_minutes": "ten"},
    ])
    async def test_malformed_create(self, client, settings, body):
        response = await client.post("/reservations/create", json=body, headers=auth_headers(settings, DRIVER_A))

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_zero_duration(self, client, settings, slot):
        response = await client.post(
            "/reservations/create",
            json={"slot_id": str(slot.id), "expires_in_minutes": 0},
            headers=auth_headers(settings, DRIVER_A),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_slot(self, client, settings):
        response = await client.post(
            "/reservations/create",
            json={"slot_id": "00000000-0000-0000-0000-000000000001"},
            headers=auth_headers(settings, DRIVER_A),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_flow(self, client, settings, services, slot):
        reservation = await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        path = f"/reservations/cancel/{reservation.id}"

        forbidden = await client.post(path, headers=auth_headers(settings, DRIVER_B))
        first = await client.post(path, headers=auth_headers(settings, DRIVER_A))
        second = await client.post(path, headers=auth_headers(settings, DRIVER_A))

        assert forbidden.status_code == 403
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "cancelled"
        assert second.status_code == 200
        assert (await services.slots.get_slot(slot.id)).status == SlotStatus.AVAILABLE.value

    @pytest.mark.asyncio
    async def test_cancel_expired_is_bad_request(self, client, settings, services, slot, clock):
        reservation = await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)
        await services.engine.expire_overdue()

        response = await client.post(
            f"/reservations/cancel/{reservation.id}", headers=auth_headers(settings, DRIVER_A)
        )

        assert response.status_code == 400
        assert response.json()["details"]["current_state"] == "expired"

    @pytest.mark.asyncio
    async def test_checkin_complete_and_list(self, client, settings, services, slot):
        reservation = await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        headers = auth_headers(settings, DRIVER_A)

        checked_in = await client.post(f"/reservations/checkin/{reservation.id}", headers=headers)
        completed = await client.post(f"/reservations/complete/{reservation.id}", headers=headers)
        listed = await client.get("/reservations", params={"status": "completed"}, headers=headers)
        fetched = await client.get(f"/reservations/{reservation.id}", headers=auth_headers(settings, DRIVER_B))

        assert checked_in.status_code == 200
        assert checked_in.json()["data"]["checked_in_at"] is not None
        assert completed.json()["data"]["status"] == "completed"
        assert listed.json()["count"] == 1
        assert fetched.status_code == 403


class TestIngestEndpoint:

    @pytest.mark.asyncio
    async def test_ingest_applies_occupancy(self, client, services, slot, device):
        registered, api_key = device
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)

        response = await client.post("/devices/ingest", json={
            "device_id": str(registered.id),
            "api_key": api_key,
            "event_type": "occupancy",
            "is_occupied": True,
        })

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert (await services.slots.get_slot(slot.id)).status == SlotStatus.OCCUPIED.value

    @pytest.mark.asyncio
    async def test_key_in_header(self, client, device):
        registered, api_key = device
        response = await client.post(
            "/devices/ingest",
            json={"device_id": str(registered.id), "event_type": "heartbeat"},
            headers={"X-Device-Key": api_key},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bad_credential(self, client, services, device):
        registered, _ = device
        response = await client.post("/devices/ingest", json={
            "device_id": str(registered.id),
            "api_key": "dk_wrong",
            "event_type": "heartbeat",
        })

        assert response.status_code == 401
        assert await count_events(services) == 0

    @pytest.mark.asyncio
    async def test_oversized_key_for_unknown_device(self, client, services, device):
        response = await client.post("/devices/ingest", json={
            "device_id": str(uuid4()),
            "api_key": "x" * 100,
            "event_type": "heartbeat",
        })

        assert response.status_code == 401
        assert await count_events(services) == 0

    @pytest.mark.asyncio
    async def test_oversized_header_key(self, client, services, device):
        registered, _ = device
        response = await client.post(
            "/devices/ingest",
            json={"device_id": str(registered.id), "event_type": "heartbeat"},
            headers={"X-Device-Key": "x" * 200},
        )

        assert response.status_code == 401
        assert await count_events(services) == 0

    @pytest.mark.asyncio
    async def test_malformed_payload_is_audited(self, client, services, device):
        registered, api_key = device
        response = await client.post("/devices/ingest", json={
            "device_id": str(registered.id),
            "api_key": api_key,
            "event_type": "teleport",
        })

        assert response.status_code == 400
        assert await count_events(services, DeviceEvent.accepted.is_(False)) == 1

    @pytest.mark.asyncio
    async def test_malformed_without_credential_not_recorded(self, client, services, device):
        response = await client.post(
            "/devices/ingest",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert await count_events(services) == 0


class TestRegistryEndpoints:

    @pytest.mark.asyncio
    async def test_slot_crud(self, client, settings):
        admin = auth_headers(settings, ADMIN)

        created = await client.post("/slots", json={"code": "c-03", "zone": "west"}, headers=admin)
        slot_id = created.json()["data"]["id"]
        patched = await client.patch(f"/slots/{slot_id}", json={"zone": "east"}, headers=admin)
        maintenance = await client.post(f"/slots/{slot_id}/maintenance", json={"enabled": True}, headers=admin)
        listed = await client.get("/slots", params={"status": "maintenance"}, headers=auth_headers(settings, DRIVER_A))
        deleted = await client.delete(f"/slots/{slot_id}", headers=admin)

        assert created.status_code == 201
        assert created.json()["data"]["code"] == "C-03"
        assert patched.json()["data"]["zone"] == "east"
        assert maintenance.json()["data"]["status"] == "maintenance"
        assert [s["code"] for s in listed.json()["data"]] == ["C-03"]
        assert deleted.status_code == 200

    @pytest.mark.asyncio
    async def test_status_not_writable(self, client, settings, slot):
        response = await client.patch(
            f"/slots/{slot.id}", json={"status": "occupied"}, headers=auth_headers(settings, ADMIN)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_blank_code_rejected_on_update(self, client, settings, slot):
        response = await client.patch(
            f"/slots/{slot.id}", json={"code": "   "}, headers=auth_headers(settings, ADMIN)
        )

        fetched = await client.get(f"/slots/{slot.id}", headers=auth_headers(settings, ADMIN))
        assert response.status_code == 400
        assert fetched.json()["data"]["code"] == "A-01"

    @pytest.mark.asyncio
    async def test_driver_cannot_create_slot(self, client, settings):
        response = await client.post("/slots", json={"code": "X-1"}, headers=auth_headers(settings, DRIVER_A))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_device_key_shown_once(self, client, settings, slot):
        admin = auth_headers(settings, ADMIN)

        created = await client.post("/devices", json={"name": "sensor", "slot_id": str(slot.id)}, headers=admin)
        device_id = created.json()["data"]["device"]["id"]
        fetched = await client.get(f"/devices/{device_id}", headers=admin)
        rotated = await client.post(f"/devices/{device_id}/rotate-key", headers=admin)

        assert created.status_code == 201
        api_key = created.json()["data"]["api_key"]
        assert api_key.startswith("dk_")
        assert "api_key" not in fetched.json()["data"]
        assert "key_hash" not in fetched.json()["data"]
        assert rotated.json()["data"]["api_key"] != api_key

    @pytest.mark.asyncio
    async def test_unlink_device(self, client, settings, device):
        registered, _ = device
        response = await client.patch(
            f"/devices/{registered.id}", json={"slot_id": None}, headers=auth_headers(settings, ADMIN)
        )
        assert response.json()["data"]["slot_id"] is None


class TestSystemEndpoints:

    @pytest.mark.asyncio
    async def test_sweep_requires_service_key(self, client, services, slot, clock):
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)

        denied = await client.post("/internal/sweep")
        allowed = await client.post("/internal/sweep", headers={"X-Service-Key": "test-service-key"})

        assert denied.status_code == 401
        assert allowed.status_code == 200
        body = allowed.json()
        assert body["count"] == 1
        assert body["expired"][0]["status"] == "expired"

    @pytest.mark.asyncio
    async def test_change_feed_visibility(self, client, settings, services, slot, other_slot):
        seq = services.feed.last_seq
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        await services.engine.create_reservation(DRIVER_B.user_id, other_slot.id)

        response = await client.get("/changes", params={"since": seq}, headers=auth_headers(settings, DRIVER_A))

        changes = response.json()["data"]
        reservation_owners = {c["data"]["user_id"] for c in changes if c["entity"] == "reservation"}
        assert reservation_owners == {DRIVER_A.user_id}
        assert any(c["entity"] == "slot" for c in changes)
        assert response.json()["last_seq"] == services.feed.last_seq

    @pytest.mark.asyncio
    async def test_health_and_metrics(self, client):
        health = await client.get("/health")
        metrics = await client.get("/metrics")

        assert health.status_code == 200
        assert health.json()["checks"]["database"] == "healthy"
        assert metrics.status_code == 200
        assert "reservation_attempts" in metrics.text

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req_test123"})
        assert response.headers["X-Request-ID"] == "req_test123"

    @pytest.mark.asyncio
    async def test_unsafe_request_id_replaced(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"].startswith("req_")
