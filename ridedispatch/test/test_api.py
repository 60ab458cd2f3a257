import time

from fastapi.testclient import TestClient

from ridedispatch.main import create_app
from ridedispatch.test.support import DROPOFF, PICKUP, Engine, north_of_pickup

PASSENGER = {"X-Actor-Id": "passenger-42"}
DRIVER = {"X-Actor-Id": "driver-7"}


def setup_test_app(**overrides):
    engine = Engine(**overrides)
    client = TestClient(create_app(engine.coordinator))
    return client, engine


def go_online(client, headers=DRIVER, km=1.0, capacity=4):
    r = client.post(
        "/v1/drivers/heartbeat",
        json={"status": "available", "location": north_of_pickup(km).model_dump(), "capacity": capacity},
        headers=headers,
    )
    assert r.status_code == 200
    return r.json()


def request_ride(client, headers=PASSENGER, **extra):
    body = {"pickup": PICKUP.model_dump(), "dropoff": DROPOFF.model_dump(), "seats": 1}
    return client.post("/v1/rides", json=body, headers={**headers, **extra})


def poll_offer(client, headers=DRIVER, attempts=200):
    for _ in range(attempts):
        r = client.get("/v1/drivers/offers", headers=headers)
        assert r.status_code == 200
        if r.json():
            return r.json()[0]
        time.sleep(0.01)
    raise AssertionError("driver never received an offer")


def test_full_flow_request_offer_accept_and_complete():
    client, engine = setup_test_app()
    with client:
        assert go_online(client)["status"] == "available"

        r = request_ride(client)
        assert r.status_code == 201
        ride = r.json()
        assert ride["status"] == "requested"
        assert ride["fare_quote"]["currency"] == "NPR"

        offer = poll_offer(client)
        assert offer["ride_id"] == ride["id"]
        r = client.post(f"/v1/offers/{offer['id']}/accept", json={"eta_minutes": 4}, headers=DRIVER)
        assert r.status_code == 200
        assert r.json()["status"] == "accepted"

        r = client.get(f"/v1/rides/{ride['id']}", headers=PASSENGER)
        assert r.json()["status"] == "driver_assigned"
        assert r.json()["driver_id"] == "driver-7"

        for event in ("enroute_pickup", "passenger_onboard", "completed"):
            r = client.post(f"/v1/rides/{ride['id']}/progress", json={"event": event}, headers=DRIVER)
            assert r.status_code == 200
            assert r.json()["status"] == event
        assert r.json()["fare_actual_cents"] == ride["fare_quote"]["amount_cents"]

        r = client.get(f"/v1/rides/{ride['id']}/assignments", headers=PASSENGER)
        assert [(a["driver_id"], a["status"]) for a in r.json()] == [("driver-7", "accepted")]


def test_decline_then_cancel_by_passenger():
    client, engine = setup_test_app()
    with client:
        go_online(client, km=1)
        go_online(client, {"X-Actor-Id": "driver-8"}, km=3)
        ride = request_ride(client).json()

        offer = poll_offer(client)
        r = client.post(f"/v1/offers/{offer['id']}/reject", headers=DRIVER)
        assert r.json()["status"] == "declined"

        second = poll_offer(client, {"X-Actor-Id": "driver-8"})
        r = client.post(f"/v1/rides/{ride['id']}/cancel", json={"actor": "passenger", "reason": "too slow"}, headers=PASSENGER)
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled_passenger"

        r = client.post(f"/v1/offers/{second['id']}/accept", headers={"X-Actor-Id": "driver-8"})
        assert r.status_code == 409
        assert r.json()["error_code"] == "ERR_CONFLICTING_STATE"


def test_error_envelopes():
    client, engine = setup_test_app()
    with client:
        go_online(client)
        ride = request_ride(client).json()

        r = client.get(f"/v1/rides/{ride['id']}")
        assert r.status_code == 422
        assert r.json()["error_code"] == "ERR_VALIDATION"

        r = client.get(f"/v1/rides/{ride['id']}", headers={"X-Actor-Id": "system"})
        assert r.status_code == 403

        r = client.get(f"/v1/rides/{ride['id']}", headers={"X-Actor-Id": "stranger"})
        assert r.status_code == 403
        assert r.json()["error_code"] == "ERR_FORBIDDEN"

        r = client.get("/v1/rides/does-not-exist", headers=PASSENGER)
        assert r.status_code == 404
        assert r.json()["error_code"] == "ERR_NOT_FOUND"

        offer = poll_offer(client)
        client.post(f"/v1/offers/{offer['id']}/accept", headers=DRIVER)
        r = client.post(f"/v1/rides/{ride['id']}/progress", json={"event": "completed"}, headers=DRIVER)
        assert r.status_code == 409
        assert r.json()["details"]["current_status"] == "driver_assigned"

        r = client.post("/v1/rides", json={"pickup": PICKUP.model_dump(), "dropoff": PICKUP.model_dump()}, headers=PASSENGER)
        assert r.status_code == 422

        r = client.post("/v1/drivers/heartbeat", json={"location": {"lat": 200, "lng": 0}}, headers=DRIVER)
        assert r.status_code == 422


def test_idempotency_key_replays_request():
    client, engine = setup_test_app()
    with client:
        first = request_ride(client, **{"Idempotency-Key": "abc-1"}).json()
        again = request_ride(client, **{"Idempotency-Key": "abc-1"}).json()
        assert first["id"] == again["id"]
        assert len(engine.store.rides) == 1


def test_nearby_and_health():
    client, engine = setup_test_app()
    with client:
        go_online(client, km=1)
        go_online(client, {"X-Actor-Id": "driver-far"}, km=8)
        r = client.get("/v1/drivers/nearby", params={"lat": PICKUP.lat, "lng": PICKUP.lng, "radius_km": 3}, headers=PASSENGER)
        assert r.status_code == 200
        assert [d["driver_id"] for d in r.json()] == ["driver-7"]

        r = client.get("/health")
        assert r.json() == {"status": "ok", "redis": None}
        assert "X-Correlation-ID" in r.headers
