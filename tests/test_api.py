import io
import os

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from main import create_app
from schemas import Actor

from conftest import CBD, offset

NAIROBI = {"address": "Kenyatta Ave", "lat": CBD.lat, "lng": CBD.lng}


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c


def signup(client, email, role="user", phone=None):
    data = {"name": email.split("@")[0], "email": email, "password": "s3cret-pass", "role": role}
    if phone:
        data["phone"] = phone
    r = client.post("/auth/register", data=data)
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def request_body(**overrides):
    body = {
        "waste_type": "plastic",
        "quantity": 50,
        "urgency": "normal",
        "location": NAIROBI,
        "contact_phone": "+254711111111",
    }
    body.update(overrides)
    return body


def png_bytes(color):
    buf = io.BytesIO()
    Image.new("RGB", (64, 64), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def collector(client):
    headers = signup(client, "juma@example.com", role="collector")
    r = client.post(
        "/collectors",
        json={
            "name": "Juma Otieno",
            "phone": "+254700000001",
            "vehicle_type": "truck",
            "capacity_kg": 500,
            "specializations": ["plastic", "organic"],
        },
        headers=headers,
    )
    assert r.status_code == 201, r.text
    collector_id = r.json()["id"]
    assert client.put(f"/collectors/{collector_id}/location", json={"lat": CBD.lat, "lng": CBD.lng}, headers=headers).status_code == 200
    r = client.put(f"/collectors/{collector_id}/availability", json={"online": True}, headers=headers)
    assert r.json()["status"] == "available"
    return collector_id, headers


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Waste Collection Dispatch Backend Running"
    assert client.get("/test").json()["backend"] == "✅ Running"


def test_register_and_login(client):
    signup(client, "amina@example.com")

    r = client.post("/auth/login", data={"username": "amina@example.com", "password": "s3cret-pass"})
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"

    assert client.post("/auth/login", data={"username": "amina@example.com", "password": "wrong"}).status_code == 400
    r = client.post("/auth/register", data={"name": "x", "email": "amina@example.com", "password": "p"})
    assert r.status_code == 400


def test_register_rejects_admin_role(client):
    r = client.post("/auth/register", data={"name": "x", "email": "x@example.com", "password": "p", "role": "admin"})
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "role"


def test_requests_need_a_token(client):
    assert client.post("/requests", json=request_body()).status_code == 401
    assert client.get("/requests", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_estimate(client):
    r = client.post("/pricing/estimate", json=request_body(waste_type="hazardous", quantity=10, urgency="emergency"))
    assert r.status_code == 200
    body = r.json()
    assert body["base_price"] == 1000
    assert body["final_price"] == 2000
    assert body["currency"] == "KES"


def test_create_and_list_requests(client):
    amina = signup(client, "amina@example.com")
    baraka = signup(client, "baraka@example.com")

    r = client.post("/requests", json=request_body(), headers=amina)
    assert r.status_code == 201
    created = r.json()
    assert created["status"] == "pending"
    assert created["price_estimate"]["final_price"] == 1000

    client.post("/requests", json=request_body(waste_type="organic", quantity=10), headers=baraka)

    mine = client.get("/requests", headers=amina).json()
    assert [r["id"] for r in mine] == [created["id"]]
    assert client.get(f"/requests/{created['id']}", headers=amina).status_code == 200

    r = client.get(f"/requests/{created['id']}", headers=baraka)
    assert r.status_code == 403
    assert r.json()["error"] == "permission_denied"


def test_invalid_request_lists_every_field(client):
    headers = signup(client, "amina@example.com")
    r = client.post(
        "/requests",
        json=request_body(waste_type="glass", quantity=-3, urgency="someday", location={"address": "x"}),
        headers=headers,
    )
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "validation_error"
    assert [e["field"] for e in body["errors"]] == ["waste_type", "quantity", "urgency", "location"]


def test_mistyped_and_invalid_fields_are_reported_together(client):
    headers = signup(client, "amina@example.com")
    r = client.post(
        "/requests",
        json=request_body(waste_type="glass", quantity="ten", urgency="someday"),
        headers=headers,
    )
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"
    assert [e["field"] for e in r.json()["errors"]] == ["waste_type", "quantity", "urgency"]


def test_malformed_body_uses_same_error_shape(client):
    headers = signup(client, "amina@example.com")
    r = client.post("/requests", json=request_body(notes="x" * 1001), headers=headers)
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"
    assert r.json()["errors"][0]["field"] == "notes"


def test_unknown_request_is_404(client):
    headers = signup(client, "amina@example.com")
    r = client.get("/requests/5f0000000000000000000000", headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_collector_accepts_and_completes(client, collector, channel, services):
    collector_id, collector_headers = collector
    customer = signup(client, "amina@example.com")
    admin = signup(client, "admin@example.com")

    first = client.post("/requests", json=request_body(), headers=customer).json()
    second = client.post("/requests", json=request_body(quantity=20), headers=customer).json()

    r = client.post(f"/requests/{first['id']}/accept", headers=collector_headers)
    assert r.status_code == 200, r.text
    collection = r.json()
    assert collection["collector_id"] == collector_id
    assert collection["status"] == "assigned"

    r = client.post(f"/requests/{second['id']}/accept", headers=collector_headers)
    assert r.status_code == 409
    assert r.json()["error"] == "already_assigned"
    assert r.json()["target"] == "collector"

    for status in ("en_route", "arrived", "collecting", "completed"):
        r = client.post(f"/collections/{collection['id']}/status", json={"status": status}, headers=collector_headers)
        assert r.status_code == 200, r.text
    done = r.json()
    assert done["payment"]["collector_net"] == 800

    r = client.post(f"/collections/{collection['id']}/rating", json={"collector_rating": 5}, headers=customer)
    assert r.status_code == 200
    r = client.post(f"/collections/{collection['id']}/rating", json={"collector_rating": 1}, headers=customer)
    assert r.status_code == 409
    assert r.json()["error"] == "already_rated"

    profile = client.get(f"/collectors/{collector_id}", headers=customer).json()
    assert profile["rating_avg"] == 5.0
    assert profile["completed_jobs"] == 1
    assert profile["status"] == "available"

    summary = client.get("/analytics/summary", headers=admin).json()
    assert summary["total_requests"] == 2
    assert summary["requests_by_status"] == {"completed": 1, "pending": 1}
    assert summary["completion_rate"] == 1.0
    assert summary["gross_volume"] == 1000
    assert summary["platform_revenue"] == 200

    services.notifier.flush(timeout=5)
    assert any("Payment confirmed" in m for m in channel.to("+254711111111"))


def test_illegal_status_change_is_409(client, collector):
    _, collector_headers = collector
    customer = signup(client, "amina@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()
    collection = client.post(f"/requests/{created['id']}/accept", headers=collector_headers).json()

    r = client.post(f"/collections/{collection['id']}/status", json={"status": "completed"}, headers=collector_headers)
    assert r.status_code == 409
    assert r.json() == {
        "error": "illegal_transition",
        "detail": "Cannot move collection from assigned to completed",
        "current": "assigned",
        "target": "completed",
    }

    r = client.post(f"/collections/{collection['id']}/status", json={"status": "en_route"}, headers=customer)
    assert r.status_code == 403


def test_customer_cancels_request(client, collector, services):
    collector_id, collector_headers = collector
    customer = signup(client, "amina@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()
    client.post(f"/requests/{created['id']}/accept", headers=collector_headers)

    r = client.post(f"/requests/{created['id']}/cancel", json={"reason": "sorted it myself"}, headers=customer)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert r.json()["cancel_reason"] == "sorted it myself"
    assert client.get(f"/collectors/{collector_id}", headers=customer).json()["status"] == "available"


def test_admin_dispatch(client, collector):
    collector_id, _ = collector
    customer = signup(client, "amina@example.com")
    admin = signup(client, "admin@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()

    assert client.get(f"/requests/{created['id']}/candidates", headers=customer).status_code == 403

    candidates = client.get(f"/requests/{created['id']}/candidates", headers=admin).json()
    assert [c["collector"]["id"] for c in candidates] == [collector_id]

    r = client.post(f"/requests/{created['id']}/dispatch", headers=admin)
    assert r.status_code == 200
    assert r.json()["collector_id"] == collector_id

    other = client.post("/requests", json=request_body(), headers=customer).json()
    r = client.post(f"/requests/{other['id']}/dispatch", headers=admin)
    assert r.status_code == 404
    assert r.json()["error"] == "no_candidates_found"


def test_collector_profile_is_owned(client, collector):
    collector_id, _ = collector
    intruder = signup(client, "kip@example.com", role="collector")
    r = client.put(f"/collectors/{collector_id}/availability", json={"online": False}, headers=intruder)
    assert r.status_code == 403


def test_proof_photo_upload(client, collector):
    _, collector_headers = collector
    customer = signup(client, "amina@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()
    collection = client.post(f"/requests/{created['id']}/accept", headers=collector_headers).json()
    for status in ("en_route", "arrived"):
        client.post(f"/collections/{collection['id']}/status", json={"status": status}, headers=collector_headers)

    r = client.post(
        f"/collections/{collection['id']}/photos",
        files={"image": ("bags.png", png_bytes((120, 200, 40)), "image/png")},
        headers=collector_headers,
    )
    assert r.status_code == 201, r.text
    assert len(r.json()["phash"]) == 16
    assert r.json()["duplicate_of"] is None

    r = client.post(
        f"/collections/{collection['id']}/photos",
        files={"image": ("bags.png", b"not an image", "image/png")},
        headers=collector_headers,
    )
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "image"

    stored = client.get(f"/collections/{collection['id']}", headers=customer).json()
    assert len(stored["photos"]) == 1


def _uploads(settings):
    return os.listdir(settings.storage_dir)


def _upload(client, collection_id, headers):
    return client.post(
        f"/collections/{collection_id}/photos",
        files={"image": ("bags.png", png_bytes((120, 200, 40)), "image/png")},
        headers=headers,
    )


def test_rejected_photo_upload_stores_nothing(client, collector, settings):
    _, collector_headers = collector
    customer = signup(client, "amina@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()
    collection = client.post(f"/requests/{created['id']}/accept", headers=collector_headers).json()

    r = _upload(client, collection["id"], customer)
    assert r.status_code == 403
    # photos are only taken once the collector has arrived
    r = _upload(client, collection["id"], collector_headers)
    assert r.status_code == 409
    assert r.json()["target"] == "photo"

    assert _uploads(settings) == []


def test_photo_file_removed_when_collection_moves_on(client, collector, services, settings, monkeypatch):
    _, collector_headers = collector
    customer = signup(client, "amina@example.com")
    created = client.post("/requests", json=request_body(), headers=customer).json()
    collection = client.post(f"/requests/{created['id']}/accept", headers=collector_headers).json()
    for status in ("en_route", "arrived"):
        client.post(f"/collections/{collection['id']}/status", json={"status": status}, headers=collector_headers)
    real_attach = services.lifecycle.attach_photo

    def cancelled_meanwhile(collection_id, actor, url, phash):
        services.lifecycle.transition(collection_id, "cancelled", Actor(id="ops-1", role="admin"))
        return real_attach(collection_id, actor, url, phash)

    monkeypatch.setattr(services.lifecycle, "attach_photo", cancelled_meanwhile)

    r = _upload(client, collection["id"], collector_headers)

    assert r.status_code == 409
    assert _uploads(settings) == []


def test_surge_override(client):
    admin = signup(client, "admin@example.com")
    customer = signup(client, "amina@example.com")
    override = {"lat": CBD.lat, "lng": CBD.lng, "multiplier": 1.5, "reason": "bad_weather", "duration_minutes": 30}

    assert client.post("/admin/surge", json=override, headers=customer).status_code == 403
    r = client.post("/admin/surge", json=override, headers=admin)
    assert r.status_code == 201

    active = client.get("/surge").json()
    assert [s["reason"] for s in active] == ["bad_weather"]
    assert client.post("/pricing/estimate", json=request_body()).json()["final_price"] == 1500


def test_hotspots(client):
    admin = signup(client, "admin@example.com")
    customer = signup(client, "amina@example.com")
    far = offset(CBD, north_km=20)
    for point in (CBD, CBD, far):
        location = {"address": "x", "lat": point.lat, "lng": point.lng}
        client.post("/requests", json=request_body(location=location), headers=customer)

    centers = client.get("/analytics/hotspots?k=2", headers=admin).json()["centers"]
    assert sorted(c["pending"] for c in centers) == [1, 2]


def test_route_optimization(client):
    admin = signup(client, "admin@example.com")
    body = {
        "start": {"lat": 0.0, "lng": 0.0},
        "stops": [{"lat": 0.0, "lng": 0.2}, {"lat": 0.0, "lng": 0.1}],
    }
    r = client.post("/routes/optimize", json=body, headers=admin)
    assert r.status_code == 200
    assert r.json()["order"] == [0, 2, 1]
    assert r.json()["distance_km"] == pytest.approx(22.24, abs=0.05)
