import json

from conftest import approved
from funnel.webhooks.signature import compute_signature


def _checkout(client, gateway_script, checkout_payload):
    gateway_script.queue(approved("T100", "V100"))
    return client.post("/api/v1/checkout", json=checkout_payload).json()["sessionId"]


def test_session_read_stats_and_delete(client, gateway_script, checkout_payload):
    sid = _checkout(client, gateway_script, checkout_payload)

    session = client.get(f"/api/v1/sessions/{sid}").json()["session"]
    assert session["status"] == "completed"
    assert session["hasVault"] is True
    assert session["vaultLast4"] == "V100"
    assert "vaultId" not in session

    stats = client.get("/api/v1/sessions/stats").json()
    assert stats["total"] == 1
    assert stats["byStep"]["upsell-1"] == 1

    assert client.delete(f"/api/v1/sessions/{sid}").json() == {"success": True, "deleted": sid}
    assert client.get(f"/api/v1/sessions/{sid}").status_code == 404
    assert client.delete(f"/api/v1/sessions/{sid}").status_code == 404


def test_order_summary_unknown_session(client):
    r = client.get("/api/v1/orders/ws_unknown")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_webhook_permissive_without_secret(client):
    body = json.dumps({"event_type": "transaction.sale.success", "transaction_id": "T1", "order_id": "order_ws_x"})
    r = client.post("/api/v1/webhooks/nmi", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json()["state"] == "applied"


def test_webhook_tampered_body_rejected(client, monkeypatch):
    monkeypatch.setattr("funnel.config.NMI_WEBHOOK_SECRET", "s3cret")
    body = b'{"event_type":"transaction.sale.success","transaction_id":"T1"}'
    signature = compute_signature("s3cret", body)

    tampered = body.replace(b"T1", b"T9")
    r = client.post("/api/v1/webhooks/nmi", content=tampered, headers={"X-NMI-Signature": signature})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "invalid_signature"

    ok = client.post("/api/v1/webhooks/nmi", content=body, headers={"X-NMI-Signature": signature})
    assert ok.status_code == 200


def test_webhook_form_encoded_and_unknown_types(client):
    r = client.post(
        "/api/v1/webhooks/konnective",
        content=b"type=order.created&order_id=55",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.json()["state"] == "applied"

    ignored = client.post("/api/v1/webhooks/konnective", json={"type": "campaign.deleted"})
    assert ignored.status_code == 200
    assert ignored.json()["state"] == "ignored"

    unknown = client.post("/api/v1/webhooks/someone-else", json={"type": "x"})
    assert unknown.status_code == 200
    assert unknown.json()["state"] == "ignored"


def test_webhook_get_liveness_and_challenge(client):
    assert client.get("/api/v1/webhooks/nmi", params={"challenge": "abc123"}).text == "abc123"
    assert client.get("/api/v1/webhooks/nmi", params={"hub.challenge": "xyz"}).text == "xyz"
    data = client.get("/api/v1/webhooks/konnective").json()
    assert data["message"] == "konnective webhook endpoint is active"


def test_health_endpoints(client):
    assert client.get("/health").json() == {"ok": True}
    gateway = client.get("/health/gateway")
    assert gateway.status_code == 200
    assert gateway.json()["configured"] is True

    store = client.get("/health/store").json()
    assert store["sessions"]["backend"] == "memory"
    assert store["orders"]["backend"] == "memory"
    assert store["rateLimit"]["enabled"] is False
    assert set(store["events"]) == {"pending", "published", "processed", "failed"}


def test_security_headers(client):
    r = client.get("/health")
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["X-Content-Type-Options"] == "nosniff"


def test_session_delete_is_rate_limited(client, gateway_script, checkout_payload, monkeypatch):
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")
    sid = _checkout(client, gateway_script, checkout_payload)
    statuses = [client.delete(f"/api/v1/sessions/{sid}").status_code for _ in range(6)]
    assert statuses == [200, 404, 404, 404, 404, 429]
