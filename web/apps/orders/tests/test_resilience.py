import httpx
import pytest

from apps.orders.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable
from apps.orders.http_adapters import CircuitBreaker, MercadoPagoClient


class R:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data
        self.text = ""

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


APPROVED = {"id": 42, "status": "approved", "transaction_amount": 197.0, "external_reference": "ref-1"}


def test_get_payment_retries_on_5xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 2
    calls = {"n": 0}

    def fake_get(self, url, params=None, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return R(503)
        assert headers["X-Retry-Count"] == "1"
        return R(200, APPROVED)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)

    out = MercadoPagoClient("tok", base_url="http://mp").get_payment("42")
    assert out.status == "approved"
    assert calls["n"] == 2


def test_get_payment_no_retry_on_404(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_get(self, url, params=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(404, {"message": "Payment not found"})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayRejected) as e:
        MercadoPagoClient("tok", base_url="http://mp").get_payment("nope")
    assert e.value.status_code == 404
    assert calls["n"] == 1


@pytest.mark.parametrize("forged", ["search?external_reference=x", "../x", "42/refunds", "", "a" * 65])
def test_get_payment_refuses_ids_that_change_the_path(monkeypatch, forged):
    def fake_get(self, url, params=None, headers=None, **kwargs):
        raise AssertionError(f"unexpected request to {url}")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayRejected) as e:
        MercadoPagoClient("tok", base_url="http://mp").get_payment(forged)
    assert e.value.status_code == 400
    assert e.value.message == "invalid payment id"


def test_get_payment_connect_errors_exhaust_retries(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_get(self, url, params=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayUnavailable):
        MercadoPagoClient("tok", base_url="http://mp").get_payment("42")
    assert calls["n"] == 3


def test_get_payment_read_timeout_not_retried(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_get(self, url, params=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayTimeout):
        MercadoPagoClient("tok", base_url="http://mp").get_payment("42")
    assert calls["n"] == 1


def test_search_by_external_reference(monkeypatch):
    seen = {}

    def fake_get(self, url, params=None, headers=None, **kwargs):
        seen.update(url=url, params=params)
        return R(200, {"results": [APPROVED]})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    out = MercadoPagoClient("tok", base_url="http://mp").find_by_external_reference("ref-1")
    assert out.id == "42"
    assert seen["url"] == "http://mp/v1/payments/search"
    assert seen["params"]["external_reference"] == "ref-1"

    monkeypatch.setattr(httpx.Client, "get", lambda self, url, **kw: R(200, {"results": []}), raising=True)
    assert MercadoPagoClient("tok", base_url="http://mp").find_by_external_reference("ref-2") is None


def test_circuit_opens_after_threshold(monkeypatch, settings):
    settings.HTTP_CIRCUIT_FAIL_THRESHOLD = 2
    settings.HTTP_CIRCUIT_RESET_TIMEOUT = 60
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(500)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    from apps.orders.domain import ChargeRequest, Customer, PaymentMethod
    from decimal import Decimal

    charge = ChargeRequest(
        amount=Decimal("10.00"),
        currency="BRL",
        description="x",
        payment_method=PaymentMethod.PIX,
        payment_method_id="pix",
        external_reference="ref",
        customer=Customer(name="A", email="a@example.com"),
    )
    client = MercadoPagoClient("tok", base_url="http://mp")
    for _ in range(2):
        with pytest.raises(GatewayRejected):
            client.create_payment(charge, "k" * 16)

    with pytest.raises(GatewayUnavailable) as e:
        client.create_payment(charge, "k" * 16)
    assert e.value.message == "CIRCUIT_OPEN"
    assert calls["n"] == 2


def test_half_open_allows_single_probe():
    cb = CircuitBreaker("t", fail_threshold=1, reset_timeout=0.0)
    cb.on_failure()
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(RuntimeError):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
