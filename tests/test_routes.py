"""HTTP surface over the in-memory ledger (auth and payment processor faked)."""

import pytest

from conftest import checkout_event

pytestmark = pytest.mark.asyncio

ADMIN = {"Authorization": "Bearer admin-1"}
U1 = {"Authorization": "Bearer U1"}
U2 = {"Authorization": "Bearer U2"}


async def _seed(client):
    r = await client.post(
        "/v1/admin/packages",
        json={"package_id": "pkg_100", "name": "Starter", "credits": 100, "unit_amount": 500, "currency": "usd"},
        headers=ADMIN,
    )
    assert r.status_code == 200, r.text
    r = await client.post(
        "/v1/admin/resources",
        json={"resource_id": "r1", "name": "Guide", "cost": 40, "payload": {"title": "T", "content": "secret"}},
        headers=ADMIN,
    )
    assert r.status_code == 200, r.text


async def _top_up(client, headers) -> str:
    r = await client.post("/v1/credits/buy", json={"package_id": "pkg_100"}, headers=headers)
    assert r.status_code == 200, r.text
    ref = r.json()["checkout_ref"]
    r = await client.post(
        "/v1/payments/webhook",
        content=checkout_event(ref),
        headers={"Stripe-Signature": "valid"},
    )
    assert r.status_code == 200, r.text
    return ref


async def test_purchase_scenario(client, store):
    await _seed(client)

    r = await client.get("/v1/credits/balance", headers=U1)
    assert r.json() == {"credits": 0, "updated_at": None}

    ref = await _top_up(client, U1)
    r = await client.get("/v1/credits/balance", headers=U1)
    assert r.json()["credits"] == 100
    assert r.json()["updated_at"] is not None

    r = await client.get("/v1/resources/r1")
    assert r.status_code == 200
    assert r.json()["accessible"] is False
    assert "payload" not in r.json()

    r = await client.post("/v1/resources/r1/buy", headers=U1)
    assert r.status_code == 200, r.text
    first = r.json()
    assert first["credits"] == 60
    assert first["purchase"]["credits_spent"] == 40

    r = await client.post("/v1/resources/r1/buy", headers=U1)
    assert r.json()["credits"] == 60
    assert r.json()["purchase"] == first["purchase"]

    r = await client.get("/v1/resources/r1", headers=U1)
    assert r.json()["accessible"] is True
    assert r.json()["payload"]["content"] == "secret"

    await store.credit_balance("U2", 10)
    r = await client.post("/v1/resources/r1/buy", headers=U2)
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "INSUFFICIENT_BALANCE"

    r = await client.get("/v1/credits/transactions", headers=U1)
    body = r.json()
    assert [t["checkout_ref"] for t in body["items"]] == [ref]
    assert body["items"][0]["status"] == "succeeded"

    r = await client.get("/v1/resources/purchases", headers=U1)
    assert [p["resource_id"] for p in r.json()["items"]] == ["r1"]


async def test_webhook_replay_reports_success(client, store):
    await _seed(client)
    ref = await _top_up(client, U1)
    for _ in range(3):
        r = await client.post(
            "/v1/payments/webhook",
            content=checkout_event(ref),
            headers={"Stripe-Signature": "valid"},
        )
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "transaction_status": "succeeded"}
    assert (await store.get_balance("U1")).credits == 100


async def test_webhook_unknown_checkout_is_acknowledged_and_flagged(client, audit, dispatcher):
    r = await client.post(
        "/v1/payments/webhook",
        content=checkout_event("cs_unknown"),
        headers={"Stripe-Signature": "valid"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"
    assert r.json()["code"] == "UNKNOWN_TRANSACTION"
    await dispatcher.drain()
    assert "unknown_transaction" in audit.types()


async def test_webhook_orphaned_payment(client, directory):
    await _seed(client)
    r = await client.post("/v1/credits/buy", json={"package_id": "pkg_100"}, headers=U1)
    ref = r.json()["checkout_ref"]
    directory.deleted.add("U1")
    r = await client.post(
        "/v1/payments/webhook",
        content=checkout_event(ref),
        headers={"Stripe-Signature": "valid"},
    )
    assert r.status_code == 200
    assert r.json()["code"] == "ORPHANED_PAYMENT"


async def test_webhook_success_after_expiry_is_not_credited(client, store, audit, dispatcher):
    await _seed(client)
    r = await client.post("/v1/credits/buy", json={"package_id": "pkg_100"}, headers=U1)
    ref = r.json()["checkout_ref"]
    for event_type, payment_status in (("checkout.session.expired", "unpaid"), ("checkout.session.completed", "paid")):
        r = await client.post(
            "/v1/payments/webhook",
            content=checkout_event(ref, event_type, payment_status=payment_status),
            headers={"Stripe-Signature": "valid"},
        )
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "transaction_status": "expired"}
    assert await store.get_balance("U1") is None
    await dispatcher.drain()
    assert "payment_after_expiry" in audit.types()


async def test_webhook_bad_signature(client):
    r = await client.post(
        "/v1/payments/webhook",
        content=checkout_event("cs_1"),
        headers={"Stripe-Signature": "forged"},
    )
    assert r.status_code == 400


async def test_webhook_ignores_other_events(client):
    r = await client.post(
        "/v1/payments/webhook",
        content=b'{"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}',
        headers={"Stripe-Signature": "valid"},
    )
    assert r.status_code == 200
    assert r.json() == {"status": "ignored"}


async def test_webhook_storage_outage_is_retryable(client, store, monkeypatch):
    from app.core.exceptions import StorageUnavailableError

    async def unavailable(checkout_ref):
        raise StorageUnavailableError()

    monkeypatch.setattr(store, "get_transaction", unavailable)
    r = await client.post(
        "/v1/payments/webhook",
        content=checkout_event("cs_1"),
        headers={"Stripe-Signature": "valid"},
    )
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "STORAGE_UNAVAILABLE"


async def test_buy_unknown_package(client):
    r = await client.post("/v1/credits/buy", json={"package_id": "nope"}, headers=U1)
    assert r.status_code == 404


async def test_buy_credits_processor_down(client, gateway):
    await _seed(client)
    gateway.fail_create = True
    r = await client.post("/v1/credits/buy", json={"package_id": "pkg_100"}, headers=U1)
    assert r.status_code == 502
    assert r.json()["error"]["code"] == "TRANSACTION_INIT_FAILED"


async def test_requires_authentication(client):
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 401
    r = await client.post("/v1/resources/r1/buy")
    assert r.status_code == 401


async def test_admin_routes_require_admin(client):
    r = await client.post(
        "/v1/admin/resources",
        json={"name": "Guide", "cost": 1},
        headers=U1,
    )
    assert r.status_code == 403


async def test_package_currency_must_be_supported(client):
    r = await client.post(
        "/v1/admin/packages",
        json={"credits": 100, "unit_amount": 500, "currency": "xyz"},
        headers=ADMIN,
    )
    assert r.status_code == 422


async def test_list_packages_and_resources(client):
    await _seed(client)
    r = await client.get("/v1/credits/packages")
    assert [p["package_id"] for p in r.json()["packages"]] == ["pkg_100"]
    r = await client.get("/v1/resources")
    resources = r.json()["resources"]
    assert [x["resource_id"] for x in resources] == ["r1"]
    assert "payload" not in resources[0]


async def test_unknown_resource(client):
    r = await client.get("/v1/resources/missing")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


async def test_transactions_paginate(client):
    await _seed(client)
    for _ in range(3):
        await client.post("/v1/credits/buy", json={"package_id": "pkg_100"}, headers=U1)

    r = await client.get("/v1/credits/transactions", params={"limit": 2}, headers=U1)
    body = r.json()
    assert len(body["items"]) == 2
    assert body["has_more"] is True

    r = await client.get("/v1/credits/transactions", params={"limit": 2, "offset": 2}, headers=U1)
    body = r.json()
    assert len(body["items"]) == 1
    assert body["has_more"] is False


async def test_admin_incident_queue(client, monkeypatch):
    from datetime import datetime
    from types import SimpleNamespace

    from app.core import audit as audit_trail

    entry = SimpleNamespace(
        id="65f000000000000000000001",
        event_type="unknown_transaction",
        user_id=None,
        entity_id="cs_unknown",
        metadata={"reported_status": "succeeded"},
        created_at=datetime(2024, 1, 1),
        resolved_at=None,
        resolved_by=None,
        resolution_note=None,
    )
    calls = []

    async def fake_list(limit, offset, include_resolved=False):
        calls.append((limit, offset, include_resolved))
        return [entry]

    async def fake_resolve(incident_id, resolved_by, note=None):
        return SimpleNamespace(**{**vars(entry), "resolved_at": datetime(2024, 1, 2), "resolved_by": resolved_by, "resolution_note": note})

    monkeypatch.setattr(audit_trail, "list_incidents", fake_list)
    monkeypatch.setattr(audit_trail, "resolve_incident", fake_resolve)

    r = await client.get("/v1/admin/incidents", headers=U1)
    assert r.status_code == 403

    r = await client.get("/v1/admin/incidents", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["incidents"][0]["entity_id"] == "cs_unknown"
    assert calls == [(50, 0, False)]

    r = await client.post(
        f"/v1/admin/incidents/{entry.id}/resolve",
        json={"note": "refunded in dashboard"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    incident = r.json()["incident"]
    assert incident["resolved_by"] == "admin-1"
    assert incident["resolution_note"] == "refunded in dashboard"
