import pytest

from apps.orders.adapters import GatewayStub
from apps.orders.errors import GatewayTimeout
from apps.orders.models import OrderModel

CHECKOUT_URL = "/api/checkout/"


def post(client, payload, key):
    return client.post(CHECKOUT_URL, data=payload, content_type="application/json", **{"HTTP_IDEMPOTENCY_KEY": key})


@pytest.mark.django_db
def test_same_key_same_payload_replays_response(client, gateway, checkout_payload):
    r1 = post(client, checkout_payload(), "idem-same-0001")
    r2 = post(client, checkout_payload(), "idem-same-0001")

    assert r1.status_code == 201
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_same_key_different_payload_conflicts(client, gateway, checkout_payload):
    r1 = post(client, checkout_payload(), "idem-conflict-1")
    assert r1.status_code == 201

    r2 = post(client, checkout_payload(payment_method="boleto"), "idem-conflict-1")
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_replay_preserves_402(client, gateway, checkout_payload):
    payload = checkout_payload(payment_method="credit_card", card_token="rejected-1")
    r1 = post(client, payload, "idem-402-0001")
    r2 = post(client, payload, "idem-402-0001")

    assert r1.status_code == r2.status_code == 402
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_timeout_is_not_replayed_and_retry_reuses_order(client, gateway, checkout_payload, monkeypatch):
    original = GatewayStub.create_payment

    def slow(self, charge, key):
        raise GatewayTimeout("no answer from gateway: ReadTimeout")

    monkeypatch.setattr(GatewayStub, "create_payment", slow)
    r1 = post(client, checkout_payload(), "idem-retry-0001")
    assert r1.status_code == 504

    monkeypatch.setattr(GatewayStub, "create_payment", original)
    r2 = post(client, checkout_payload(), "idem-retry-0001")
    assert r2.status_code == 201
    assert r2.headers.get("Idempotent-Replay") is None
    assert r2.json()["order_id"] == r1.json()["order_id"]
    assert OrderModel.objects.count() == 1
