import pytest

from apps.orders.adapters import GatewayStub

CHECKOUT_URL = "/api/checkout/"


def checkout(client, checkout_payload, key, **overrides):
    r = client.post(
        CHECKOUT_URL,
        data=checkout_payload(**overrides),
        content_type="application/json",
        **{"HTTP_IDEMPOTENCY_KEY": key},
    )
    assert r.status_code == 201
    return r.json()


def test_ping(client):
    r = client.get("/api/orders/ping/")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.django_db
def test_status_endpoint_polls_gateway(client, gateway, checkout_payload):
    created = checkout(client, checkout_payload, "idem-status-001")
    url = f"/api/orders/{created['order_id']}/status/"

    r1 = client.get(url)
    assert r1.status_code == 200
    assert r1.json()["status"] == "pending"
    assert r1.json()["last_checked_at"]

    GatewayStub.set_status("tx_1", "approved")
    r2 = client.get(url)
    body = r2.json()
    assert body["status"] == "paid"
    assert body["changed"] is True
    assert body["order_id"] == created["order_id"]


@pytest.mark.django_db
def test_status_endpoint_not_found(client, gateway):
    r = client.get("/api/orders/not-an-id/status/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_status_endpoint_gateway_lookup_4xx_is_502_with_stored_status(client, gateway, checkout_payload):
    created = checkout(client, checkout_payload, "idem-status-002")
    # the gateway no longer knows tx_1 and answers 404
    GatewayStub.reset()

    r = client.get(f"/api/orders/{created['order_id']}/status/")
    assert r.status_code == 502
    body = r.json()
    assert body["detail"] == "GATEWAY_REJECTED"
    assert body["status"] == "pending"
    assert body["order_id"] == created["order_id"]
    assert body["last_checked_at"]


@pytest.mark.django_db
def test_list_orders_paginates(client, gateway, checkout_payload):
    for i in range(3):
        checkout(client, checkout_payload, f"idem-list-00{i}")

    r = client.get("/api/orders/?page=1&page_size=2")
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert len(body["results"]) == 2
    first = body["results"][0]
    assert first["total_amount"] == "197.00"
    assert first["transaction_id"].startswith("tx_")
    assert "items" not in first

    assert client.get("/api/orders/?status=paid").json()["count"] == 0


@pytest.mark.django_db
def test_order_detail_with_items_and_payments(client, gateway, checkout_payload):
    created = checkout(
        client,
        checkout_payload,
        "idem-detail-01",
        items=[
            {"id": "p1", "name": "Curso", "price": "19.90", "role": "main"},
            {"id": "b1", "name": "Bonus", "price": "9.97", "role": "bump"},
        ],
    )

    r = client.get(f"/api/orders/{created['order_id']}/")
    assert r.status_code == 200
    body = r.json()
    assert body["total_amount"] == "29.87"
    assert body["bump_amount"] == "9.97"
    assert {i["role"] for i in body["items"]} == {"main", "bump"}
    assert body["payments"][0]["transaction_id"] == "tx_1"


@pytest.mark.django_db
def test_order_detail_not_found(client):
    r = client.get("/api/orders/00000000-0000-0000-0000-000000000000/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"
