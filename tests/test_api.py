import uuid

import pytest
from starlette.testclient import TestClient

import gfcity.api.app as app_module
from gfcity.api import deps
from gfcity.api.app import app
from gfcity.core.rate_limit import KeyedRateLimiter
from gfcity.domain.models import PaymentStatus, ReportStatus


@pytest.fixture
def client(monkeypatch, service):
    # Swap the cached service factory so API tests stay offline and isolated.
    monkeypatch.setattr(deps, "get_service", lambda: service)
    monkeypatch.setattr(app_module, "_limiter", KeyedRateLimiter(max_events=1000, window_seconds=60))
    with TestClient(app) as c:
        yield c


def _as(user):
    return {"X-User-Id": str(user.id)}


def test_health(client):
    assert client.get("/api/health").json() == {"status": "OK"}


def test_register_and_login(client):
    resp = client.post(
        "/api/auth/register",
        json={
            "phone_number": "+256700123456",
            "full_name": "John Mukasa",
            "role": "resident",
            "location": {"latitude": 0.3476, "longitude": 32.6169},
        },
    )
    assert resp.status_code == 201
    user = resp.json()["data"]["user"]
    assert user["role"] == "resident"

    resp = client.post("/api/auth/login", json={"phone_number": "+256700123456"})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["id"] == user["id"]


def test_invalid_phone_is_a_validation_error(client):
    resp = client.post("/api/auth/register", json={"phone_number": "0700123456", "full_name": "John"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["kind"] == "validation_error"


def test_login_unknown_phone_is_not_found(client):
    resp = client.post("/api/auth/login", json={"phone_number": "+256700000999"})
    assert resp.status_code == 404
    assert resp.json()["kind"] == "not_found"


def test_missing_or_unknown_caller_is_unauthorized(client):
    assert client.get("/api/reports/mine").status_code == 401
    resp = client.get("/api/reports/mine", headers={"X-User-Id": "not-a-uuid"})
    assert resp.status_code == 401
    assert resp.json()["kind"] == "unauthorized"


def test_report_flow_over_http(client, resident, collector, pending_payment, store):
    resp = client.post(
        "/api/reports",
        headers=_as(resident),
        json={"latitude": 0.3476, "longitude": 32.6169, "description": "Overflowing skip", "volume": "medium"},
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["payment_amount"] == 5000
    assert data["report"]["status"] == "pending_payment"
    report_id = data["report"]["id"]
    code = data["report"]["verification_code"]

    # Collectors cannot see or claim unpaid reports.
    assert client.get(f"/api/reports/{report_id}", headers=_as(collector)).status_code == 404
    resp = client.post(f"/api/reports/{report_id}/claim", headers=_as(collector))
    assert resp.status_code == 409
    assert resp.json()["kind"] == "invalid_transition"

    report = store.get_report(uuid.UUID(report_id))
    payment = pending_payment(report, resident)
    resp = client.post(
        "/webhooks/flutterwave",
        headers={"verif-hash": "test-hash"},
        json={"event": "charge.completed", "data": {"id": 1, "tx_ref": payment.reference.value, "status": "successful"}},
    )
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    nearby = client.get(
        "/api/reports/nearby", headers=_as(collector), params={"latitude": 0.3163, "longitude": 32.5822, "radius": 6000}
    ).json()["data"]["reports"]
    assert [r["id"] for r in nearby] == [report_id]
    assert "verification_code" not in nearby[0]

    nearest = client.get(f"/api/reports/{report_id}/nearest-collectors", headers=_as(resident)).json()
    assert [c["id"] for c in nearest["data"]["collectors"]] == [str(collector.id)]

    assert client.post(f"/api/reports/{report_id}/claim", headers=_as(collector)).status_code == 200
    assigned = client.get("/api/collectors/assignments", headers=_as(collector)).json()["data"]["reports"]
    assert [r["id"] for r in assigned] == [report_id]

    resp = client.post(
        f"/api/reports/{report_id}/verify",
        headers=_as(collector),
        json={"latitude": 0.3476, "longitude": 32.6169, "code": code},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["collection"]["code_matched"] is True

    mine = client.get("/api/reports/mine", headers=_as(resident)).json()["data"]["reports"]
    assert mine[0]["status"] == ReportStatus.COMPLETED.value


def test_residents_cannot_use_collector_endpoints(client, resident):
    resp = client.patch("/api/collectors/location", headers=_as(resident), json={"latitude": 0.3, "longitude": 32.5})
    assert resp.status_code == 401


def test_collector_location_update(client, collector):
    resp = client.patch("/api/collectors/location", headers=_as(collector), json={"latitude": 0.33, "longitude": 32.6})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["current_location"] == {"lat": 0.33, "lon": 32.6}


def test_description_length_is_capped(client, resident):
    resp = client.post(
        "/api/reports",
        headers=_as(resident),
        json={"latitude": 0.3476, "longitude": 32.6169, "description": "x" * 501, "volume": "small"},
    )
    assert resp.status_code == 400


def test_bad_report_id_is_a_validation_error(client, resident):
    resp = client.get("/api/reports/abc", headers=_as(resident))
    assert resp.status_code == 400


def test_initiate_payment_and_status(monkeypatch, client, service, resident):
    report = service.submit_report(resident, resident.home_location, "x", "medium")
    monkeypatch.setattr(
        "gfcity.payments.gateways.post_json",
        lambda *a, **k: {"meta": {"authorization": {"redirect": "https://pay.example/r"}}, "data": {"id": 5}},
    )
    resp = client.post("/api/payments/initiate", headers=_as(resident), json={"report_id": str(report.id)})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["redirect_url"] == "https://pay.example/r"
    assert data["provider"] == "flutterwave"

    resp = client.get(f"/api/payments/flutterwave/{data['reference']}", headers=_as(resident))
    assert resp.status_code == 200
    assert resp.json()["data"]["payment"]["status"] == PaymentStatus.PENDING.value


def test_gateway_outage_maps_to_503(monkeypatch, client, service, resident):
    import httpx

    report = service.submit_report(resident, resident.home_location, "x", "medium")

    def down(*args, **kwargs):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr("gfcity.payments.gateways.post_json", down)
    resp = client.post("/api/payments/initiate", headers=_as(resident), json={"report_id": str(report.id)})
    assert resp.status_code == 503
    assert resp.json()["kind"] == "dependency_unavailable"
    assert "traceback" not in resp.json()


def test_flutterwave_webhook_bad_signature_is_401(client):
    resp = client.post("/webhooks/flutterwave", headers={"verif-hash": "nope"}, json={"data": {"tx_ref": "x"}})
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_flutterwave_webhook_is_acknowledged_even_when_unprocessable(client):
    resp = client.post("/webhooks/flutterwave", headers={"verif-hash": "test-hash"}, content=b"not json")
    assert resp.status_code == 200
    assert resp.json()["success"] is False

    resp = client.post(
        "/webhooks/flutterwave",
        headers={"verif-hash": "test-hash"},
        json={"data": {"tx_ref": "GFC-0-unknown", "status": "successful"}},
    )
    assert resp.status_code == 200
    assert resp.json()["outcome"] == "not_found"


def test_pesapal_ipn_is_always_acknowledged(monkeypatch, client, service, resident, store):
    from gfcity.domain.models import ExternalReference, Payment, PaymentProviderName

    report = service.submit_report(resident, resident.home_location, "x", "medium")
    payment = store.add_payment(
        Payment(
            report_id=report.id,
            resident_id=resident.id,
            reference=ExternalReference(provider=PaymentProviderName.PESAPAL, value="GFC-1-pesapal1"),
            amount=report.fee_amount,
        )
    )
    monkeypatch.setattr("gfcity.payments.gateways.post_json", lambda *a, **k: {"token": "tok"})
    monkeypatch.setattr(
        "gfcity.payments.gateways.get_json", lambda *a, **k: {"payment_status_description": "Completed"}
    )

    resp = client.get(
        "/webhooks/pesapal",
        params={"OrderTrackingId": "trk-1", "OrderMerchantReference": payment.reference.value},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == 200
    assert body["orderTrackingId"] == "trk-1"
    assert store.get_report(report.id).status == ReportStatus.PAYMENT_CONFIRMED

    resp = client.get("/webhooks/pesapal")
    assert resp.status_code == 200
    assert resp.json()["success"] is False


def test_rate_limit_returns_429(monkeypatch, client):
    monkeypatch.setattr(app_module, "_limiter", KeyedRateLimiter(max_events=2, window_seconds=3600))
    codes = [client.get("/api/health").status_code for _ in range(3)]
    assert codes == [200, 200, 429]
    assert client.get("/webhooks/pesapal").status_code == 200


def test_debug_mode_adds_traceback(monkeypatch, client):
    from gfcity.config import settings as settings_module

    base = settings_module.get_settings()
    debug = base.model_copy(update={"app": base.app.model_copy(update={"debug": True})})
    monkeypatch.setattr(app_module, "get_settings", lambda: debug)
    resp = client.get("/api/reports/mine")
    assert resp.status_code == 401
    assert "traceback" in resp.json()


def test_nearby_with_huge_radius_is_clamped(client, paid_report, collector):
    resp = client.get(
        "/api/reports/nearby",
        headers=_as(collector),
        params={"latitude": 0.3163, "longitude": 32.5822, "radius": 20_000_000},
    )
    assert resp.status_code == 200
    assert [r["id"] for r in resp.json()["data"]["reports"]] == [str(paid_report.id)]
