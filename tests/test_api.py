import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from rental_booking.api import get_actor, get_orchestrator
from rental_booking.app import app
from rental_booking.models import Actor, ActorRole

from conftest import window


@pytest.fixture
def actor():
    return Actor(id="staff-1", role=ActorRole.STAFF, station_assignments=["st-1"])


@pytest.fixture
def client(orchestrator, actor):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_actor] = lambda: actor
    # pas de "with" : on ne déclenche pas le startup (tables Postgres + poller)
    yield TestClient(app)
    app.dependency_overrides.clear()


def booking_body(hours=30, **kwargs):
    start, end = window(hours)
    body = {"renter_id": "renter-1", "vehicle_id": "car-1", "station_id": "st-1",
            "start_time": start.isoformat(), "end_time": end.isoformat()}
    body.update(kwargs)
    return body


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_create_then_conflict(client):
    r = client.post("/v1/bookings", json=booking_body())
    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "PENDING"
    assert data["total_amount"] == 309
    assert data["pricing"]["base_price"] == 260

    r = client.post("/v1/bookings", json=booking_body(renter_id="renter-2"))
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "VehicleUnavailable"


def test_quote_does_not_reserve(client):
    start, end = window(30)
    body = {"vehicle_id": "car-1", "start_time": start.isoformat(), "end_time": end.isoformat()}
    assert client.post("/v1/bookings/quote", json=body).json()["subtotal"] == 309
    assert client.post("/v1/bookings", json=booking_body()).status_code == 201


def test_invalid_window_is_bad_request(client):
    start, _ = window(1)
    r = client.post("/v1/bookings", json=booking_body(end_time=start.isoformat()))
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "InvalidWindow"


def test_unknown_booking_is_404(client):
    assert client.get("/v1/bookings/12345").status_code == 404


def test_deposit_callback_and_cancel_refund(client, payments):
    booking_id = client.post("/v1/bookings", json=booking_body()).json()["id"]
    assert client.post(f"/v1/bookings/{booking_id}/deposit").json()["paymentRef"] == f"pay-{booking_id}"

    outcome = {"outcome_id": "cb-1", "status": "PAID"}
    first = client.post(f"/v1/bookings/{booking_id}/deposit/callback", json=outcome).json()
    again = client.post(f"/v1/bookings/{booking_id}/deposit/callback", json=outcome).json()
    assert (first["status"], first["deposit_status"], first["applied"]) == ("CONFIRMED", "PAID", True)
    assert again["applied"] is False

    r = client.post(f"/v1/bookings/{booking_id}/cancel", json={"reason": "trip cancelled"})
    assert r.json()["deposit_status"] == "REFUNDED"
    assert payments.refunds == [(f"pay-{booking_id}", 500)]


def test_poll_endpoint_reports_unresolved_deposit(client):
    booking_id = client.post("/v1/bookings", json=booking_body()).json()["id"]
    client.post(f"/v1/bookings/{booking_id}/deposit")
    r = client.post(f"/v1/bookings/{booking_id}/deposit/poll")
    assert r.status_code == 200
    assert r.json()["reconciled"] is False
    assert r.json()["deposit_status"] == "PENDING"


def test_checkout_before_payment_is_conflict(client):
    booking_id = client.post("/v1/bookings", json=booking_body()).json()["id"]
    r = client.post(f"/v1/bookings/{booking_id}/checkout")
    assert r.status_code == 409
    assert r.json()["detail"]["details"] == {"current": "PENDING", "target": "IN_PROGRESS"}


def test_complete_with_bad_rating(client):
    booking_id = client.post("/v1/bookings", json=booking_body()).json()["id"]
    client.post(f"/v1/bookings/{booking_id}/deposit/callback", json={"outcome_id": "cb", "status": "PAID"})
    client.post(f"/v1/bookings/{booking_id}/checkout")
    _, end = window(30)
    r = client.post(f"/v1/bookings/{booking_id}/complete",
                    json={"actual_end_time": end.isoformat(), "customer_rating": 7})
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "InvalidCompletion"

    r = client.post(f"/v1/bookings/{booking_id}/complete",
                    json={"actual_end_time": end.isoformat(), "customer_rating": 5, "return_odometer": 800})
    assert r.json()["status"] == "COMPLETED"


def test_list_is_limited_to_staff_stations(client, make_booking):
    make_booking(station_id="st-1")
    make_booking(station_id="st-9", vehicle_id="car-2")
    rows = client.get("/v1/bookings").json()
    assert [row["station_id"] for row in rows] == ["st-1"]


@pytest.fixture
def anonymous(orchestrator):
    def no_session():
        raise HTTPException(401, "invalid session")

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_actor] = no_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.parametrize("method,path,body", [
    ("post", "/v1/bookings", booking_body()),
    ("post", "/v1/bookings/quote", {"vehicle_id": "car-1", "start_time": window(5)[0].isoformat(),
                                    "end_time": window(5)[1].isoformat()}),
    ("get", "/v1/bookings", None),
    ("get", "/v1/bookings/{id}", None),
    ("post", "/v1/bookings/{id}/deposit", None),
    ("post", "/v1/bookings/{id}/deposit/poll", None),
    ("post", "/v1/bookings/{id}/cancel", {"reason": "x"}),
    ("post", "/v1/bookings/{id}/checkout", None),
    ("post", "/v1/bookings/{id}/complete", {"actual_end_time": window(30)[1].isoformat()}),
])
def test_booking_routes_require_a_session(anonymous, make_booking, payments, method, path, body):
    b = make_booking()
    r = anonymous.request(method.upper(), path.format(id=b.id), json=body)
    assert r.status_code == 401
    assert payments.initiated == []
    assert payments.refunds == []


def test_payment_callback_needs_no_session(anonymous, make_booking):
    b = make_booking()
    r = anonymous.post(f"/v1/bookings/{b.id}/deposit/callback", json={"outcome_id": "cb-1", "status": "PAID"})
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["applied"]) == ("CONFIRMED", True)


@pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 501}, {"offset": -1}])
def test_list_rejects_out_of_range_paging(client, params):
    assert client.get("/v1/bookings", params=params).status_code == 422


def test_list_paging_is_applied(client, make_booking):
    first = make_booking()
    second = make_booking(offset_hours=100)
    rows = client.get("/v1/bookings", params={"limit": 1, "offset": 1}).json()
    assert [row["id"] for row in rows] == [first.id]
    assert client.get("/v1/bookings", params={"limit": 1}).json()[0]["id"] == second.id
