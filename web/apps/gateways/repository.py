"""ORM access for configured gateways.

Converts ``Gateway`` rows into the plain ``GatewayRecord`` values the
credential resolver works on.
"""

from typing import List, Optional

from django.conf import settings

from .credentials import GatewayRecord, KeyPair, ResolvedCredentials, resolve
from .models import Gateway


def to_record(obj: Gateway) -> GatewayRecord:
    return GatewayRecord(
        id=str(obj.id),
        name=obj.name,
        provider=obj.provider,
        environment=obj.environment,
        is_active=obj.is_active,
        created_at=obj.created_at,
        sandbox=KeyPair(obj.sandbox_public_key, obj.sandbox_access_token),
        production=KeyPair(obj.production_public_key, obj.production_access_token),
        legacy=KeyPair(obj.legacy_public_key, obj.legacy_access_token),
        webhook_secret=obj.webhook_secret,
    )


class GatewayRepository:
    """Loads gateway records and resolves credentials for a provider."""

    def __init__(self, provider: Optional[str] = None):
        self.provider = provider or settings.GATEWAY_PROVIDER

    def records(self) -> List[GatewayRecord]:
        qs = Gateway.objects.filter(provider=self.provider).order_by("-created_at")
        return [to_record(g) for g in qs]

    def resolve(self, gateway_id: Optional[str] = None, environment: Optional[str] = None) -> ResolvedCredentials:
        """Resolve credentials; raises ``NoGateway`` / ``MissingCredentials``."""
        return resolve(self.records(), self.provider, gateway_id=gateway_id, environment=environment)
