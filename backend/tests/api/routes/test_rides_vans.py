import uuid

from fastapi.testclient import TestClient
from sqlmodel import Session

from ridedispatch.core.config import settings
from ridedispatch.models import Tenant
from tests.utils.fleet import create_online_van, create_random_tenant, create_ride
from tests.utils.utils import random_lower_string


def ride_json(**overrides) -> dict:
    payload = {
        "rider_name": "Jane Rider",
        "passenger_count": 1,
        "priority": 3,
        "pickup_address": "12 Main St",
        "pickup_lat": 0.0,
        "pickup_lng": 1.0,
        "dropoff_address": "99 Elm St",
        "dropoff_lat": 0.0,
        "dropoff_lng": 2.0,
    }
    payload.update(overrides)
    return payload


class TestTenantRoutes:
    """Tenant registration and X-Tenant-ID resolution"""

    def test_create_and_read_tenant(self, client: TestClient) -> None:
        slug = random_lower_string()
        response = client.post(f"{settings.API_V1_STR}/tenants/", json={"name": "Helping Hands", "slug": slug})
        assert response.status_code == 200
        created = response.json()
        assert created["auto_assign_enabled"] is True

        me = client.get(f"{settings.API_V1_STR}/tenants/me", headers={"X-Tenant-ID": created["id"]})
        assert me.status_code == 200
        assert me.json()["slug"] == slug

    def test_duplicate_slug_rejected(self, client: TestClient, tenant: Tenant) -> None:
        response = client.post(f"{settings.API_V1_STR}/tenants/", json={"name": "Copy", "slug": tenant.slug})
        assert response.status_code == 400

    def test_unknown_tenant(self, client: TestClient) -> None:
        response = client.get(f"{settings.API_V1_STR}/tenants/me", headers={"X-Tenant-ID": str(uuid.uuid4())})
        assert response.status_code == 404

    def test_missing_tenant_header(self, client: TestClient) -> None:
        response = client.get(f"{settings.API_V1_STR}/tenants/me")
        assert response.status_code == 422
        assert "errors" in response.json()

    def test_disable_auto_assign(self, client: TestClient, tenant_headers: dict) -> None:
        response = client.patch(
            f"{settings.API_V1_STR}/tenants/me", headers=tenant_headers, json={"auto_assign_enabled": False}
        )
        assert response.status_code == 200
        assert response.json()["auto_assign_enabled"] is False

    def test_delete_tenant(self, client: TestClient, tenant_headers: dict) -> None:
        client.post(f"{settings.API_V1_STR}/rides/", headers=tenant_headers, json=ride_json())
        response = client.delete(f"{settings.API_V1_STR}/tenants/me", headers=tenant_headers)
        assert response.status_code == 200

        status = client.get(f"{settings.API_V1_STR}/optimization/status", headers=tenant_headers)
        assert status.status_code == 404


class TestVanRoutes:
    """Van lifecycle: create -> online -> location updates -> offline"""

    def test_van_lifecycle(self, client: TestClient, tenant_headers: dict) -> None:
        created = client.post(
            f"{settings.API_V1_STR}/vans/", headers=tenant_headers, json={"name": "Van 1", "capacity": 6}
        )
        assert created.status_code == 200
        van = created.json()
        assert van["status"] == "AVAILABLE"
        assert van["current_lat"] is None

        online = client.post(
            f"{settings.API_V1_STR}/vans/{van['id']}/online",
            headers=tenant_headers,
            json={"lat": 40.7, "lng": -74.0},
        )
        assert online.status_code == 200
        assert online.json()["status"] == "IN_USE"
        assert online.json()["current_lat"] == 40.7

        moved = client.patch(
            f"{settings.API_V1_STR}/vans/{van['id']}/location",
            headers=tenant_headers,
            json={"lat": 40.8, "lng": -74.1, "passenger_count": 2},
        )
        assert moved.status_code == 200
        assert moved.json()["passenger_count"] == 2

        offline = client.post(f"{settings.API_V1_STR}/vans/{van['id']}/offline", headers=tenant_headers)
        assert offline.status_code == 200
        assert offline.json()["status"] == "AVAILABLE"
        assert offline.json()["current_lat"] is None

    def test_location_update_requires_van_in_service(self, client: TestClient, tenant_headers: dict) -> None:
        van = client.post(f"{settings.API_V1_STR}/vans/", headers=tenant_headers, json={"name": "Van 2"}).json()
        response = client.patch(
            f"{settings.API_V1_STR}/vans/{van['id']}/location", headers=tenant_headers, json={"lat": 1.0, "lng": 1.0}
        )
        assert response.status_code == 400

    def test_capacity_must_be_positive(self, client: TestClient, tenant_headers: dict) -> None:
        response = client.post(
            f"{settings.API_V1_STR}/vans/", headers=tenant_headers, json={"name": "Tiny", "capacity": 0}
        )
        assert response.status_code == 422

    def test_other_tenants_van_is_not_found(self, client: TestClient, db: Session, tenant_headers: dict) -> None:
        other_van = create_online_van(db, create_random_tenant(db))
        response = client.get(f"{settings.API_V1_STR}/vans/{other_van.id}", headers=tenant_headers)
        assert response.status_code == 404

    def test_ad_hoc_task_is_appended(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van = create_online_van(db, tenant)
        response = client.post(
            f"{settings.API_V1_STR}/vans/{van.id}/tasks",
            headers=tenant_headers,
            json={"type": "PICKUP", "address": "Depot", "lat": 0.0, "lng": 0.5},
        )
        assert response.status_code == 200
        assert response.json()["position"] == 0

        tasks = client.get(f"{settings.API_V1_STR}/vans/{van.id}/tasks", headers=tenant_headers).json()
        assert [t["address"] for t in tasks] == ["Depot"]


class TestRideRoutes:
    """Ride intake, manual dispatch and cancellation"""

    def test_create_ride_schedules_optimization(self, client: TestClient, tenant_headers: dict) -> None:
        response = client.post(f"{settings.API_V1_STR}/rides/", headers=tenant_headers, json=ride_json())
        assert response.status_code == 200
        ride = response.json()
        assert ride["status"] == "PENDING"
        assert ride["van_id"] is None

        status = client.get(f"{settings.API_V1_STR}/optimization/status", headers=tenant_headers).json()
        assert status["debounce_pending"] is True
        assert status["state"] == "IDLE"

    def test_opted_out_ride_does_not_schedule(self, client: TestClient, tenant_headers: dict) -> None:
        client.post(f"{settings.API_V1_STR}/rides/", headers=tenant_headers, json=ride_json(skip_auto_assign=True))
        status = client.get(f"{settings.API_V1_STR}/optimization/status", headers=tenant_headers).json()
        assert status["debounce_pending"] is False

    def test_invalid_priority(self, client: TestClient, tenant_headers: dict) -> None:
        response = client.post(f"{settings.API_V1_STR}/rides/", headers=tenant_headers, json=ride_json(priority=11))
        assert response.status_code == 422

    def test_list_and_get_rides(self, client: TestClient, tenant_headers: dict) -> None:
        created = client.post(f"{settings.API_V1_STR}/rides/", headers=tenant_headers, json=ride_json()).json()

        listing = client.get(f"{settings.API_V1_STR}/rides/?status=PENDING", headers=tenant_headers).json()
        assert listing["count"] == 1
        assert listing["data"][0]["id"] == created["id"]

        single = client.get(f"{settings.API_V1_STR}/rides/{created['id']}", headers=tenant_headers)
        assert single.status_code == 200

    def test_other_tenants_ride_is_not_found(self, client: TestClient, db: Session, tenant_headers: dict) -> None:
        ride = create_ride(db, create_random_tenant(db))
        response = client.get(f"{settings.API_V1_STR}/rides/{ride.id}", headers=tenant_headers)
        assert response.status_code == 404

    def test_manual_assignment(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van = create_online_van(db, tenant)
        ride = create_ride(db, tenant)

        response = client.post(
            f"{settings.API_V1_STR}/rides/{ride.id}/assign", headers=tenant_headers, json={"van_id": str(van.id)}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ASSIGNED"
        assert response.json()["van_id"] == str(van.id)

        tasks = client.get(f"{settings.API_V1_STR}/vans/{van.id}/tasks", headers=tenant_headers).json()
        assert [(t["type"], t["position"]) for t in tasks] == [("PICKUP", 0), ("DROPOFF", 1)]

        again = client.post(
            f"{settings.API_V1_STR}/rides/{ride.id}/assign", headers=tenant_headers, json={"van_id": str(van.id)}
        )
        assert again.status_code == 409

    def test_assign_to_unknown_van(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        ride = create_ride(db, tenant)
        response = client.post(
            f"{settings.API_V1_STR}/rides/{ride.id}/assign", headers=tenant_headers, json={"van_id": str(uuid.uuid4())}
        )
        assert response.status_code == 404

    def test_cancel_ride_removes_its_stops(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van = create_online_van(db, tenant)
        ride = create_ride(db, tenant)
        client.post(f"{settings.API_V1_STR}/rides/{ride.id}/assign", headers=tenant_headers, json={"van_id": str(van.id)})

        response = client.post(
            f"{settings.API_V1_STR}/rides/{ride.id}/cancel", headers=tenant_headers, json={"reason": "Rider no-show"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert client.get(f"{settings.API_V1_STR}/vans/{van.id}/tasks", headers=tenant_headers).json() == []

        again = client.post(f"{settings.API_V1_STR}/rides/{ride.id}/cancel", headers=tenant_headers, json={})
        assert again.status_code == 400


class TestTaskRoutes:
    """Driver and dispatcher operations on a van's task sequence"""

    def _assigned(self, client: TestClient, db: Session, tenant: Tenant, headers: dict, rides: int = 1):
        van = create_online_van(db, tenant, capacity=8)
        created = []
        for i in range(rides):
            ride = create_ride(db, tenant, pickup=(0.0, 1.0 + 2 * i), dropoff=(0.0, 2.0 + 2 * i))
            client.post(f"{settings.API_V1_STR}/rides/{ride.id}/assign", headers=headers, json={"van_id": str(van.id)})
            created.append(ride)
        tasks = client.get(f"{settings.API_V1_STR}/vans/{van.id}/tasks", headers=headers).json()
        return van, created, tasks

    def test_complete_pickup_then_dropoff(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, (ride,), tasks = self._assigned(client, db, tenant, tenant_headers)
        base = f"{settings.API_V1_STR}/vans/{van.id}/tasks"

        pickup = client.post(f"{base}/{tasks[0]['id']}/complete", headers=tenant_headers)
        assert pickup.status_code == 200
        assert pickup.json()["completed_at"] is not None
        assert client.get(f"{settings.API_V1_STR}/rides/{ride.id}", headers=tenant_headers).json()["status"] == "PICKED_UP"
        assert client.get(f"{settings.API_V1_STR}/vans/{van.id}", headers=tenant_headers).json()["passenger_count"] == 1

        remaining = client.get(base, headers=tenant_headers).json()
        assert [(t["type"], t["position"]) for t in remaining] == [("DROPOFF", 0)]

        twice = client.post(f"{base}/{tasks[0]['id']}/complete", headers=tenant_headers)
        assert twice.status_code == 400

        client.post(f"{base}/{tasks[1]['id']}/complete", headers=tenant_headers)
        assert client.get(f"{settings.API_V1_STR}/rides/{ride.id}", headers=tenant_headers).json()["status"] == "COMPLETED"
        assert client.get(f"{settings.API_V1_STR}/vans/{van.id}", headers=tenant_headers).json()["passenger_count"] == 0

    def test_dropoff_cannot_be_completed_before_pickup(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, (ride,), tasks = self._assigned(client, db, tenant, tenant_headers)
        base = f"{settings.API_V1_STR}/vans/{van.id}/tasks"

        response = client.post(f"{base}/{tasks[1]['id']}/complete", headers=tenant_headers)
        assert response.status_code == 409

        assert client.get(f"{settings.API_V1_STR}/rides/{ride.id}", headers=tenant_headers).json()["status"] == "ASSIGNED"
        remaining = client.get(base, headers=tenant_headers).json()
        assert [(t["type"], t["position"]) for t in remaining] == [("PICKUP", 0), ("DROPOFF", 1)]

    def test_remove_stop_returns_ride_to_queue(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, (ride,), tasks = self._assigned(client, db, tenant, tenant_headers)

        response = client.delete(f"{settings.API_V1_STR}/vans/{van.id}/tasks/{tasks[1]['id']}", headers=tenant_headers)
        assert response.status_code == 200
        assert response.json() == []

        ride_state = client.get(f"{settings.API_V1_STR}/rides/{ride.id}", headers=tenant_headers).json()
        assert ride_state["status"] == "PENDING"
        assert ride_state["van_id"] is None

    def test_unknown_task(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van = create_online_van(db, tenant)
        response = client.post(
            f"{settings.API_V1_STR}/vans/{van.id}/tasks/{uuid.uuid4()}/complete", headers=tenant_headers
        )
        assert response.status_code == 404

    def test_reorder(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, rides, tasks = self._assigned(client, db, tenant, tenant_headers, rides=2)
        ids = [t["id"] for t in tasks]
        url = f"{settings.API_V1_STR}/vans/{van.id}/tasks/order"

        # Pick up both riders before dropping either off
        response = client.put(url, headers=tenant_headers, json={"task_ids": [ids[0], ids[2], ids[1], ids[3]]})
        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == [ids[0], ids[2], ids[1], ids[3]]
        assert [t["position"] for t in response.json()] == [0, 1, 2, 3]

    def test_reorder_rejects_dropoff_before_pickup(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, rides, tasks = self._assigned(client, db, tenant, tenant_headers)
        ids = [t["id"] for t in tasks]
        response = client.put(
            f"{settings.API_V1_STR}/vans/{van.id}/tasks/order", headers=tenant_headers, json={"task_ids": [ids[1], ids[0]]}
        )
        assert response.status_code == 400

    def test_reorder_requires_every_open_task(self, client: TestClient, db: Session, tenant: Tenant, tenant_headers: dict) -> None:
        van, rides, tasks = self._assigned(client, db, tenant, tenant_headers)
        response = client.put(
            f"{settings.API_V1_STR}/vans/{van.id}/tasks/order", headers=tenant_headers, json={"task_ids": [tasks[0]["id"]]}
        )
        assert response.status_code == 400
