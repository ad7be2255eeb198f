"""Gateway credential resolution.

Pure functions over plain ``GatewayRecord`` values: nothing here touches the
database or the network, so the selection rules can be tested with literal
records.

Selection runs an ordered tuple of named strategies, each returning a record
or ``None``; the first hit wins:

1. ``configured_gateway`` - the gateway the checkout asked for, if active.
2. ``latest_active_gateway`` - newest active gateway of the provider.
3. ``latest_gateway_any_state`` - newest gateway of the provider even when
   inactive; results from this strategy are flagged ``degraded``.

Once a record is chosen, the key pair is picked explicitly and wrapped in
one of the ``Credentials`` variants, so callers always know which
environment's keys they are using.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ClassVar, Optional, Sequence, Tuple

from apps.orders.errors import MissingCredentials, NoGateway

SANDBOX = "sandbox"
PRODUCTION = "production"
LEGACY = "legacy"


@dataclass(frozen=True)
class KeyPair:
    public_key: str = ""
    access_token: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.public_key.strip() and self.access_token.strip())


@dataclass(frozen=True)
class Credentials:
    """A key pair tagged with the environment it belongs to."""

    environment: ClassVar[str] = ""
    pair: KeyPair

    @property
    def access_token(self) -> str:
        return self.pair.access_token

    @property
    def public_key(self) -> str:
        return self.pair.public_key


@dataclass(frozen=True)
class SandboxCredentials(Credentials):
    environment: ClassVar[str] = SANDBOX


@dataclass(frozen=True)
class ProductionCredentials(Credentials):
    environment: ClassVar[str] = PRODUCTION


@dataclass(frozen=True)
class LegacyCredentials(Credentials):
    environment: ClassVar[str] = LEGACY


@dataclass(frozen=True)
class GatewayRecord:
    """ORM-free view of a configured gateway."""

    id: str
    name: str
    provider: str
    environment: str
    is_active: bool
    created_at: datetime
    sandbox: KeyPair = KeyPair()
    production: KeyPair = KeyPair()
    legacy: KeyPair = KeyPair()
    webhook_secret: str = ""


@dataclass(frozen=True)
class GatewayQuery:
    provider: str
    gateway_id: Optional[str] = None
    environment: Optional[str] = None


@dataclass(frozen=True)
class ResolvedCredentials:
    gateway_id: str
    gateway_name: str
    provider: str
    credentials: Credentials
    degraded: bool = False
    strategy: str = ""
    webhook_secret: str = ""

    @property
    def environment(self) -> str:
        return self.credentials.environment

    @property
    def access_token(self) -> str:
        return self.credentials.access_token


Strategy = Callable[[Sequence[GatewayRecord], GatewayQuery], Optional[GatewayRecord]]


def _newest_first(records: Sequence[GatewayRecord]) -> list[GatewayRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)


def configured_gateway(records: Sequence[GatewayRecord], query: GatewayQuery) -> Optional[GatewayRecord]:
    if not query.gateway_id:
        return None
    for record in records:
        if str(record.id) == str(query.gateway_id) and record.is_active and record.provider == query.provider:
            return record
    return None


def latest_active_gateway(records: Sequence[GatewayRecord], query: GatewayQuery) -> Optional[GatewayRecord]:
    for record in _newest_first(records):
        if record.provider == query.provider and record.is_active:
            return record
    return None


def latest_gateway_any_state(records: Sequence[GatewayRecord], query: GatewayQuery) -> Optional[GatewayRecord]:
    for record in _newest_first(records):
        if record.provider == query.provider:
            return record
    return None


STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("configured_gateway", configured_gateway),
    ("latest_active_gateway", latest_active_gateway),
    ("latest_gateway_any_state", latest_gateway_any_state),
)
DEGRADED_STRATEGIES = frozenset({"latest_gateway_any_state"})


def select_gateway(
    records: Sequence[GatewayRecord],
    query: GatewayQuery,
    strategies: Sequence[Tuple[str, Strategy]] = STRATEGIES,
) -> Tuple[str, GatewayRecord]:
    """Return ``(strategy_name, record)`` for the first strategy that matches.

    Raises:
        NoGateway: If no strategy yields a record.
    """
    for name, strategy in strategies:
        record = strategy(records, query)
        if record is not None:
            return name, record
    raise NoGateway(f"no {query.provider} gateway configured")


def select_credentials(record: GatewayRecord, environment: Optional[str] = None) -> Credentials:
    """Pick the key pair to use for ``record``.

    Without a requested environment the preference is sandbox, production,
    legacy. With one, only that environment's pair and then the legacy pair
    are considered. ``legacy`` (stored on orders charged with the legacy
    pair) considers the legacy pair only.

    Raises:
        MissingCredentials: If no candidate pair is complete.
    """
    candidates: list[Credentials]
    if environment == PRODUCTION:
        candidates = [ProductionCredentials(record.production), LegacyCredentials(record.legacy)]
    elif environment == SANDBOX:
        candidates = [SandboxCredentials(record.sandbox), LegacyCredentials(record.legacy)]
    elif environment == LEGACY:
        candidates = [LegacyCredentials(record.legacy)]
    else:
        candidates = [
            SandboxCredentials(record.sandbox),
            ProductionCredentials(record.production),
            LegacyCredentials(record.legacy),
        ]
    for candidate in candidates:
        if candidate.pair.is_complete:
            return candidate
    wanted = environment or "any environment"
    raise MissingCredentials(f"gateway {record.name!r} has no complete key pair for {wanted}")


def resolve(
    records: Sequence[GatewayRecord],
    provider: str,
    gateway_id: Optional[str] = None,
    environment: Optional[str] = None,
) -> ResolvedCredentials:
    """Resolve the gateway account and credentials for a checkout.

    Args:
        records: Every configured gateway.
        provider: Required provider type (e.g. ``mercado_pago``).
        gateway_id: Gateway selected by the checkout, if any.
        environment: ``sandbox`` / ``production`` when the caller insists.

    Returns:
        ResolvedCredentials with the chosen environment and the strategy that
        found the record.

    Raises:
        NoGateway: No record of the provider exists.
        MissingCredentials: A record exists but has no usable key pair.
    """
    query = GatewayQuery(provider=provider, gateway_id=gateway_id, environment=environment)
    strategy, record = select_gateway(records, query)
    credentials = select_credentials(record, environment)
    return ResolvedCredentials(
        gateway_id=str(record.id),
        gateway_name=record.name,
        provider=record.provider,
        credentials=credentials,
        degraded=strategy in DEGRADED_STRATEGIES,
        strategy=strategy,
        webhook_secret=record.webhook_secret,
    )
