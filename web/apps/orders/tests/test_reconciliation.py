from decimal import Decimal

import pytest

from apps.gateways.models import Gateway
from apps.gateways.repository import GatewayRepository
from apps.orders.adapters import GatewayStub
from apps.orders.domain import ChargeRequest, Customer, PaymentMethod
from apps.orders.errors import GatewayTimeout, OrderNotFound
from apps.orders.models import OrderModel, StatusTransitionModel, WebhookLogModel
from apps.orders.providers import get_reconciler, get_submission_service
from apps.orders.reconciliation import Reconciler
from apps.orders.repository import OrderRepository
from apps.orders.schemas import SubmitCheckoutDTO, WebhookEventDTO
from apps.orders.signatures import sign

KEY = "idem-key-0001"


def place(checkout_payload, key=KEY, **overrides):
    dto = SubmitCheckoutDTO.model_validate(checkout_payload(**overrides))
    return get_submission_service().submit(dto, key)


def notify(tx, **kw):
    event = WebhookEventDTO.model_validate({"type": "payment", "action": "payment.updated", "data": {"id": tx}})
    return get_reconciler().handle_notification(event, **kw)


def applied(order_id):
    return StatusTransitionModel.objects.filter(order_id=order_id, outcome="applied").count()


@pytest.mark.django_db
def test_pix_approved_webhook_delivered_twice_pays_once(gateway, checkout_payload):
    result = place(checkout_payload)
    GatewayStub.set_status("tx_1", "approved")

    first = notify("tx_1")
    second = notify("tx_1")

    assert (first.processed, first.outcome) == (True, "applied")
    assert (second.processed, second.outcome) == (True, "noop")
    order = OrderModel.objects.get(pk=result.order_id)
    assert order.status == "paid"
    assert order.status_checked_at is not None
    assert applied(order.id) == 1
    assert order.latest_payment().raw_status == "approved"
    assert WebhookLogModel.objects.filter(transaction_id="tx_1", processed=True).count() == 2


@pytest.mark.django_db
def test_out_of_order_and_duplicate_events_converge(gateway, checkout_payload):
    result = place(checkout_payload)

    GatewayStub.set_status("tx_1", "approved")
    notify("tx_1")
    # a late read of an older state is ignored
    GatewayStub.set_status("tx_1", "in_process")
    assert notify("tx_1").outcome == "stale"
    order = OrderModel.objects.get(pk=result.order_id)
    assert order.latest_payment().status == order.status == "paid"
    assert order.latest_payment().raw_status == "approved"

    GatewayStub.set_status("tx_1", "refunded")
    notify("tx_1")
    notify("tx_1")
    # refunded -> paid is refused and recorded
    GatewayStub.set_status("tx_1", "approved")
    assert notify("tx_1").outcome == "anomaly"

    order = OrderModel.objects.get(pk=result.order_id)
    assert order.status == "refunded"
    assert order.latest_payment().status == order.status
    assert order.latest_payment().raw_status == "refunded"
    assert applied(order.id) == 2
    anomaly = StatusTransitionModel.objects.get(order=order, outcome="anomaly")
    assert anomaly.gateway_status == "approved"


@pytest.mark.django_db
def test_failed_order_never_becomes_paid(gateway, checkout_payload):
    result = place(checkout_payload)
    GatewayStub.set_status("tx_1", "rejected")
    notify("tx_1")
    GatewayStub.set_status("tx_1", "approved")
    ack = notify("tx_1")

    assert ack.outcome == "anomaly"
    order = OrderModel.objects.get(pk=result.order_id)
    assert order.status == "failed"
    assert order.latest_payment().status == order.status
    assert order.latest_payment().raw_status == "rejected"


@pytest.mark.django_db
def test_non_payment_events_are_acknowledged_and_ignored(gateway):
    reconciler = get_reconciler()
    for body in ({"type": "merchant_order", "data": {"id": "1"}}, {"type": "payment", "data": {}}, {}):
        ack = reconciler.handle_notification(WebhookEventDTO.model_validate(body))
        assert (ack.processed, ack.outcome) == (False, "ignored")


@pytest.mark.django_db
def test_unknown_transaction_is_acknowledged(gateway):
    ack = notify("tx_404")
    assert (ack.processed, ack.outcome) == (False, "gateway_error")


@pytest.mark.django_db
def test_charge_without_local_order_is_logged(gateway):
    GatewayStub().create_payment(
        ChargeRequest(
            amount=Decimal("10.00"),
            currency="BRL",
            description="x",
            payment_method=PaymentMethod.PIX,
            payment_method_id="pix",
            external_reference="someone-else",
            customer=Customer(name="A", email="a@example.com"),
        ),
        "someone-else",
    )
    GatewayStub.set_status("tx_1", "approved")
    ack = notify("tx_1")
    assert (ack.processed, ack.outcome) == (False, "order_not_found")
    assert WebhookLogModel.objects.get(transaction_id="tx_1").outcome == "order_not_found"


@pytest.mark.django_db
def test_signature_checked_when_gateway_has_secret(make_gateway, checkout_payload):
    make_gateway(webhook_secret="whsec")
    result = place(checkout_payload)
    GatewayStub.set_status("tx_1", "approved")

    bad = notify("tx_1", signature="ts=1,v1=deadbeef", request_id="req-1")
    assert (bad.processed, bad.outcome) == (False, "bad_signature")
    assert OrderModel.objects.get(pk=result.order_id).status == "pending"

    good = f"ts=1704908010,v1={sign('whsec', 'tx_1', 'req-1', '1704908010')}"
    ack = notify("tx_1", signature=good, request_id="req-1")
    assert ack.outcome == "applied"
    assert OrderModel.objects.get(pk=result.order_id).status == "paid"


@pytest.mark.django_db
def test_webhook_links_charge_to_unknown_outcome_payment(gateway, checkout_payload, monkeypatch):
    original = GatewayStub.create_payment

    def timeout(self, charge, key):
        # the charge reached the gateway but the answer was lost
        original(self, charge, key)
        raise GatewayTimeout("no answer from gateway: ReadTimeout")

    monkeypatch.setattr(GatewayStub, "create_payment", timeout)
    with pytest.raises(GatewayTimeout) as e:
        place(checkout_payload)

    GatewayStub.set_status("tx_1", "approved")
    assert notify("tx_1").outcome == "applied"

    order = OrderModel.objects.get(pk=e.value.order_id)
    assert order.status == "paid"
    (payment,) = order.payments.all()
    assert payment.transaction_id == "tx_1"


@pytest.mark.django_db
def test_poll_applies_missed_webhook(gateway, checkout_payload):
    result = place(checkout_payload)
    GatewayStub.set_status("tx_1", "approved")

    out = get_reconciler().poll(result.order_id)
    assert out.status.value == "paid"
    assert out.changed is True
    assert out.outcome == "applied"
    assert out.last_checked_at is not None

    again = get_reconciler().poll(result.order_id)
    assert (again.changed, again.outcome) == (False, "noop")
    assert StatusTransitionModel.objects.get(order_id=result.order_id).source == "poll"


@pytest.mark.django_db
def test_poll_settled_order_skips_gateway(gateway, checkout_payload, monkeypatch):
    result = place(checkout_payload)
    OrderModel.objects.filter(pk=result.order_id).update(status="failed")

    def boom(*a, **k):
        raise AssertionError("no gateway call expected")

    monkeypatch.setattr(GatewayStub, "get_payment", boom)
    out = get_reconciler().poll(result.order_id)
    assert (out.status.value, out.outcome) == ("failed", "settled")
    assert OrderModel.objects.get(pk=result.order_id).status_checked_at == out.last_checked_at


@pytest.mark.django_db
def test_poll_without_transaction_searches_by_reference(gateway, checkout_payload, monkeypatch):
    original = GatewayStub.create_payment

    def timeout(self, charge, key):
        original(self, charge, key)
        raise GatewayTimeout("no answer from gateway: ReadTimeout")

    monkeypatch.setattr(GatewayStub, "create_payment", timeout)
    with pytest.raises(GatewayTimeout) as e:
        place(checkout_payload)

    GatewayStub.set_status("tx_1", "approved")
    out = get_reconciler().poll(e.value.order_id)
    assert out.status.value == "paid"
    assert OrderModel.objects.get(pk=e.value.order_id).latest_payment().transaction_id == "tx_1"


@pytest.mark.django_db
def test_poll_gateway_timeout_keeps_status_and_stamps_check(gateway, checkout_payload, monkeypatch):
    result = place(checkout_payload)

    def slow(self, tx):
        raise GatewayTimeout("no answer from gateway: ReadTimeout")

    monkeypatch.setattr(GatewayStub, "get_payment", slow)
    with pytest.raises(GatewayTimeout) as e:
        get_reconciler().poll(result.order_id)
    assert e.value.details["status"] == "pending"
    assert e.value.order_id == result.order_id
    assert OrderModel.objects.get(pk=result.order_id).status_checked_at is not None


@pytest.mark.django_db
def test_poll_unknown_order(gateway):
    with pytest.raises(OrderNotFound):
        get_reconciler().poll("00000000-0000-0000-0000-000000000000")


@pytest.mark.django_db
def test_legacy_charge_is_rechecked_with_legacy_credentials(make_gateway, checkout_payload):
    gw = make_gateway(
        sandbox_public_key="",
        sandbox_access_token="",
        legacy_public_key="old-pk",
        legacy_access_token="old-token",
    )
    result = place(checkout_payload)
    assert result.environment == "legacy"
    # the account later gets a sandbox pair; the legacy charge still belongs to the legacy pair
    Gateway.objects.filter(pk=gw.pk).update(sandbox_public_key="TEST-pk", sandbox_access_token="TEST-token")

    seen = []

    def factory(resolved):
        seen.append(resolved.access_token)
        return GatewayStub()

    GatewayStub.set_status("tx_1", "approved")
    out = Reconciler(GatewayRepository(), OrderRepository(), factory).poll(result.order_id)
    assert out.status.value == "paid"
    assert seen == ["old-token"]
