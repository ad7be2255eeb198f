# Makes the Django project packages (config, edge, apps) importable before collection
import sys
from datetime import timedelta
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent  # .../web
p = str(BASE_DIR)
if p not in sys.path:
    sys.path.insert(0, p)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    from apps.orders.adapters import GatewayStub
    from apps.orders.http_adapters import reset_breakers

    GatewayStub.reset()
    reset_breakers()
    yield
    GatewayStub.reset()


@pytest.fixture
def make_gateway(db):
    """Factory for Gateway rows; each call is one second newer than the last."""
    from django.utils import timezone

    from apps.gateways.models import Gateway

    created = []

    def _make(**kwargs):
        defaults = {
            "name": f"gw-{len(created) + 1}",
            "provider": Gateway.Provider.MERCADO_PAGO,
            "environment": Gateway.Environment.SANDBOX,
            "is_active": True,
            "sandbox_public_key": "TEST-pk",
            "sandbox_access_token": "TEST-token",
        }
        defaults.update(kwargs)
        gw = Gateway.objects.create(**defaults)
        stamp = timezone.now() + timedelta(seconds=len(created))
        Gateway.objects.filter(pk=gw.pk).update(created_at=stamp)
        gw.refresh_from_db()
        created.append(gw)
        return gw

    return _make


@pytest.fixture
def gateway(make_gateway):
    return make_gateway(name="main")


@pytest.fixture
def checkout_payload():
    def _payload(**overrides):
        body = {
            "checkout_id": "chk_1",
            "customer": {
                "name": "Maria Silva",
                "email": "maria@example.com",
                "phone": "+5511999999999",
                "cpf": "123.456.789-09",
            },
            "items": [{"id": "p1", "name": "Curso", "price": "197.00", "role": "main"}],
            "payment_method": "pix",
        }
        body.update(overrides)
        return body

    return _payload
