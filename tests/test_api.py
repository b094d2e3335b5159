import pytest
from fastapi.testclient import TestClient

from dispatch.main import app, get_route_sheet_exporter
from dispatch.models import OrderStatus
from dispatch.repositories import get_store


@pytest.fixture
def client(store, exported):
    async def override_store():
        yield store

    app.dependency_overrides[get_store] = override_store
    app.dependency_overrides[get_route_sheet_exporter] = lambda: exported.append
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers(branch):
    return {"X-Branch-Id": str(branch.id), "X-User-Id": "manager-1"}


def _create(client, headers, order_ids, **extra):
    response = client.post("/api/delivery-assignments", json={"order_ids": order_ids, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["assignment"]


# =============================================================================
# ROOT / ACTOR
# =============================================================================

def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["documentation"] == "/docs"


@pytest.mark.parametrize("value", [None, "", "abc", "0", "-3"])
def test_caller_without_branch_is_forbidden(client, value):
    headers = {} if value is None else {"X-Branch-Id": value}

    response = client.get("/api/delivery-assignments", headers=headers)

    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "error": "Forbidden",
        "detail": "User is not associated with a branch",
    }


# =============================================================================
# LOOKUPS
# =============================================================================

def test_dispatch_policy_is_created_on_first_read(client, headers, branch):
    response = client.get("/api/dispatch-policy", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["branch_id"] == branch.id
    assert body["max_per_trip"] == 5
    assert body["availability_rule"] == "AFTER_ALL_DELIVERED"


def test_dispatch_policy_of_unknown_branch(client):
    response = client.get("/api/dispatch-policy", headers={"X-Branch-Id": "77"})

    assert response.status_code == 404
    assert response.json()["error"] == "Not Found"


def test_pending_orders_and_available_couriers(client, headers, store, branch, make_order):
    order = make_order(north_m=100, total=42.5)
    make_order(status=OrderStatus.DELIVERED)
    courier = store.add_courier(branch.id, "Ana", phone="+55 81 99999-0000")
    store.add_courier(branch.id, "Offline", online=False)

    pending = client.get("/api/delivery-assignments/pending-orders", headers=headers).json()
    couriers = client.get("/api/delivery-assignments/available-couriers", headers=headers).json()

    assert pending["total"] == 1
    assert pending["orders"][0]["id"] == order.id
    assert pending["orders"][0]["total"] == 42.5
    assert couriers["total"] == 1
    assert couriers["couriers"][0]["id"] == courier.id
    assert couriers["couriers"][0]["delivering_orders"] == 0


def test_pending_orders_rejects_unknown_delivery_type(client, headers):
    response = client.get("/api/delivery-assignments/pending-orders?delivery_type=DRONE", headers=headers)

    assert response.status_code == 400
    assert response.json()["success"] is False


# =============================================================================
# CREATE / PREVIEW / AUTO-CREATE
# =============================================================================

def test_create_and_read_back(client, headers, store, branch, make_order, exported):
    courier = store.add_courier(branch.id, "Ana")
    orders = [make_order(north_m=200), make_order(east_m=300)]

    created = _create(client, headers, [o.id for o in orders], courier_id=courier.id, name="Dinner")

    assert created["status"] == "PENDING"
    assert created["courier"]["name"] == "Ana"
    assert created["order_ids"] == [o.id for o in orders]
    assert created["route"][0]["is_origin"] is True
    assert [p["label"] for p in created["route"][1:]] == ["Stop A", "Stop B"]
    assert len(exported) == 1

    fetched = client.get(f"/api/delivery-assignments/{created['id']}", headers=headers).json()
    listed = client.get("/api/delivery-assignments", headers=headers).json()

    assert fetched["id"] == created["id"]
    assert listed["total"] == 1
    assert listed["assignments"][0]["name"] == "Dinner"


def test_create_error_shapes(client, headers, make_order):
    order = make_order()
    _create(client, headers, [order.id])

    empty = client.post("/api/delivery-assignments", json={"order_ids": []}, headers=headers)
    conflict = client.post("/api/delivery-assignments", json={"order_ids": [order.id]}, headers=headers)
    missing = client.get("/api/delivery-assignments/999", headers=headers)

    assert empty.status_code == 400
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "Conflict"
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Assignment #999 not found"


def test_assignment_of_other_branch_is_invisible(client, headers, store, make_order):
    other = store.add_branch("Other")
    created = _create(client, headers, [make_order().id])

    response = client.get(f"/api/delivery-assignments/{created['id']}", headers={"X-Branch-Id": str(other.id)})

    assert response.status_code == 404


def test_preview_does_not_create_anything(client, headers, store, make_order):
    orders = [make_order(north_m=1000), make_order(north_m=2000)]

    response = client.post(
        "/api/delivery-assignments/preview",
        json={"order_ids": [o.id for o in orders]},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["orders_count"] == 2
    assert body["estimated_distance"] == 2000
    assert body["used_fallback_origin"] is False
    assert store._state.assignments == {}


def test_auto_create_without_body(client, headers, store, branch, make_order):
    store.add_courier(branch.id, "Ana")
    make_order(north_m=100)
    make_order(north_m=300)

    response = client.post("/api/delivery-assignments/auto-create", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["stats"]["routes_created"] == 1
    assert body["stats"]["assigned_orders"] == 2
    assert len(body["routes"][0]["order_ids"]) == 2


def test_auto_create_without_couriers(client, headers, store, make_order):
    make_order(north_m=100)

    response = client.post("/api/delivery-assignments/auto-create", json={}, headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "No couriers available"
    assert store._state.assignments == {}


# =============================================================================
# LIFECYCLE
# =============================================================================

def test_status_courier_and_delete(client, headers, store, branch, make_order):
    first, second = store.add_courier(branch.id, "Ana"), store.add_courier(branch.id, "Bruno")
    order = make_order()
    created = _create(client, headers, [order.id], courier_id=first.id)
    base = f"/api/delivery-assignments/{created['id']}"

    reassigned = client.put(f"{base}/courier", json={"courier_id": second.id}, headers=headers)
    assert reassigned.json()["assignment"]["courier"]["id"] == second.id

    skipped = client.patch(f"{base}/status", json={"status": "COMPLETED"}, headers=headers)
    assert skipped.status_code == 400

    started = client.patch(f"{base}/status", json={"status": "IN_PROGRESS"}, headers=headers)
    assert started.status_code == 200
    assert started.json()["assignment"]["started_at"] is not None
    assert started.json()["assignment"]["orders"][0]["status"] == "DELIVERING"

    deleted = client.delete(base, headers=headers)
    assert deleted.json() == {"success": True, "message": "Route deleted successfully", "orders_freed": 1}
    assert store.get_order(order.id).status == OrderStatus.PREPARING
    assert client.get(base, headers=headers).status_code == 404


def test_invalid_status_value(client, headers, make_order):
    created = _create(client, headers, [make_order().id])

    response = client.patch(
        f"/api/delivery-assignments/{created['id']}/status",
        json={"status": "LOST"},
        headers=headers,
    )

    assert response.status_code == 400
    assert "Invalid status" in response.json()["detail"]


# =============================================================================
# COURIER
# =============================================================================

def test_courier_delivers_and_completes_the_route(client, headers, store, branch, make_order):
    courier = store.add_courier(branch.id, "Ana")
    order = make_order()
    created = _create(client, headers, [order.id], courier_id=courier.id)
    courier_headers = {**headers, "X-Courier-Id": str(courier.id)}
    url = f"/api/delivery/orders/{order.id}/status"

    delivering = client.patch(url, json={"status": "DELIVERING"}, headers=courier_headers)
    assert delivering.status_code == 200, delivering.text
    assert delivering.json()["order"]["status"] == "DELIVERING"
    assert delivering.json()["assignment_completed"] is False

    delivered = client.patch(url, json={"status": "DELIVERED"}, headers=courier_headers)
    assert delivered.json()["success"] is True
    assert delivered.json()["assignment_completed"] is True

    backward = client.patch(url, json={"status": "DELIVERING"}, headers=courier_headers)
    assert backward.status_code == 403

    route = client.get(f"/api/delivery-assignments/{created['id']}", headers=headers).json()
    assert route["status"] == "COMPLETED"
    assert route["completed_at"] is not None


@pytest.mark.parametrize("value", [None, "abc", "0"])
def test_order_update_requires_a_courier(client, headers, store, branch, make_order, value):
    courier = store.add_courier(branch.id, "Ana")
    order = make_order()
    _create(client, headers, [order.id], courier_id=courier.id)
    request_headers = headers if value is None else {**headers, "X-Courier-Id": value}

    response = client.patch(f"/api/delivery/orders/{order.id}/status", json={"status": "DELIVERED"}, headers=request_headers)

    assert response.status_code == 403
    assert response.json()["detail"] == "Caller is not a courier"
    assert store.get_order(order.id).status == OrderStatus.READY
