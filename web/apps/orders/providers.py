"""Service provider helpers wiring the checkout services with their ports.

``get_gateway_client`` returns the HTTP Mercado Pago client when
``settings.USE_HTTP_ADAPTERS`` is on, and the in-process ``GatewayStub``
otherwise. The service factories bind that choice into the submission
service and the reconciler so views and commands never pick adapters
themselves.
"""

from django.conf import settings

from apps.gateways.credentials import ResolvedCredentials
from apps.gateways.repository import GatewayRepository

from .adapters import GatewayStub
from .domain import GatewayPort
from .http_adapters import MercadoPagoClient
from .reconciliation import Reconciler
from .repository import OrderRepository
from .submission import SubmissionService


def get_gateway_client(resolved: ResolvedCredentials) -> GatewayPort:
    """Return a gateway client authenticated with the resolved credentials."""
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return MercadoPagoClient(access_token=resolved.access_token)
    return GatewayStub(access_token=resolved.access_token)


def get_submission_service() -> SubmissionService:
    return SubmissionService(
        gateways=GatewayRepository(),
        orders=OrderRepository(),
        client_factory=get_gateway_client,
    )


def get_reconciler() -> Reconciler:
    return Reconciler(
        gateways=GatewayRepository(),
        orders=OrderRepository(),
        client_factory=get_gateway_client,
    )
