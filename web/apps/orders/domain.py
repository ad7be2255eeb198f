"""Domain types, status rules and ports for checkout orders.

This module holds the plain dataclasses used as DTOs between the HTTP layer,
the services and the persistence layer, the deterministic mapping from
gateway status strings to internal order statuses, the monotonic transition
rule, and the protocol (port) the services expect from a payment gateway
client.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol, Tuple


# ---- Enums ----
class OrderStatus(str, Enum):
    """Internal settlement status of an order (and of its payments)."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    BOLETO = "boleto"


class ItemRole(str, Enum):
    MAIN = "main"
    BUMP = "bump"


class TransitionSource(str, Enum):
    SUBMISSION = "submission"
    WEBHOOK = "webhook"
    POLL = "poll"


class TransitionDecision(str, Enum):
    """Outcome of comparing the stored status with a reconciled target.

    APPLY: the write goes ahead.
    NOOP: already in the target status (safe replay).
    STALE: the gateway still reports a non-terminal status for an order that
        already settled; ignored.
    ANOMALY: disallowed terminal-to-terminal move; recorded, not applied.
    """

    APPLY = "applied"
    NOOP = "noop"
    STALE = "stale"
    ANOMALY = "anomaly"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.REFUNDED})

# paid -> refunded is the only terminal-to-terminal move allowed
ALLOWED_TERMINAL_MOVES = frozenset({(OrderStatus.PAID, OrderStatus.REFUNDED)})

GATEWAY_STATUS_MAP = {
    "approved": OrderStatus.PAID,
    "rejected": OrderStatus.FAILED,
    "cancelled": OrderStatus.FAILED,
    "refunded": OrderStatus.REFUNDED,
}


def map_gateway_status(raw: Optional[str]) -> OrderStatus:
    """Map a raw gateway status string to an internal status.

    Total over all inputs: anything not in ``GATEWAY_STATUS_MAP`` (including
    ``None``, ``in_process`` and unknown strings) maps to ``PENDING``.
    """
    if not raw:
        return OrderStatus.PENDING
    return GATEWAY_STATUS_MAP.get(str(raw).strip().lower(), OrderStatus.PENDING)


def decide_transition(current: OrderStatus, target: OrderStatus) -> TransitionDecision:
    """Apply the monotonic rule to a (current, target) pair.

    Args:
        current: Status stored for the order.
        target: Status derived from the gateway's authoritative record.

    Returns:
        TransitionDecision for the pair.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current == target:
        return TransitionDecision.NOOP
    if current == OrderStatus.PENDING:
        return TransitionDecision.APPLY
    if target == OrderStatus.PENDING:
        return TransitionDecision.STALE
    if (current, target) in ALLOWED_TERMINAL_MOVES:
        return TransitionDecision.APPLY
    return TransitionDecision.ANOMALY


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartItem:
    """A single cart line.

    Attributes:
        id: Product identifier.
        name: Display name.
        price: Unit price in major currency units.
        role: ``main`` product or ``bump`` add-on.
    """

    id: str
    name: str
    price: Decimal
    role: ItemRole = ItemRole.MAIN


@dataclass(frozen=True)
class OrderTotal:
    """Priced cart. Amounts are Decimals with two decimal places."""

    subtotal: Decimal
    bump_total: Decimal
    total: Decimal
    discounts: Decimal = Decimal("0.00")
    items: Tuple[CartItem, ...] = ()
    coupon_code: Optional[str] = None

    @property
    def main_items(self) -> Tuple[CartItem, ...]:
        return tuple(i for i in self.items if i.role == ItemRole.MAIN)

    @property
    def bump_items(self) -> Tuple[CartItem, ...]:
        return tuple(i for i in self.items if i.role == ItemRole.BUMP)


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: str = ""
    cpf: str = ""

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0]

    @property
    def last_name(self) -> str:
        return " ".join(self.name.split(" ")[1:])


@dataclass
class ChargeRequest:
    """Gateway-agnostic charge request built by the submission service."""

    amount: Decimal
    currency: str
    description: str
    payment_method: PaymentMethod
    payment_method_id: str
    external_reference: str
    customer: Customer
    token: Optional[str] = None
    installments: int = 1
    notification_url: Optional[str] = None


@dataclass
class GatewayPayment:
    """Authoritative view of a charge as reported by the gateway."""

    id: Optional[str]
    status: Optional[str]
    status_detail: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    external_reference: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None
    barcode: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def mapped_status(self) -> OrderStatus:
        return map_gateway_status(self.status)


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    previous: OrderStatus
    target: OrderStatus
    decision: TransitionDecision

    @property
    def status(self) -> OrderStatus:
        return self.target if self.decision == TransitionDecision.APPLY else self.previous

    @property
    def changed(self) -> bool:
        return self.decision == TransitionDecision.APPLY


# ---- Ports (DIP) ----
class GatewayPort(Protocol):
    """Port describing the payment gateway operations the services use.

    Implementations raise ``GatewayRejected``, ``GatewayTimeout`` or
    ``GatewayUnavailable`` from ``apps.orders.errors``.
    """

    def create_payment(self, charge: ChargeRequest, idempotency_key: str) -> GatewayPayment:
        """Create a charge; the key is forwarded as the gateway idempotency header."""
        raise NotImplementedError()

    def get_payment(self, transaction_id: str) -> GatewayPayment:
        """Fetch the authoritative record of a charge by transaction id."""
        raise NotImplementedError()

    def find_by_external_reference(self, external_reference: str) -> Optional[GatewayPayment]:
        """Return the newest charge carrying ``external_reference``, if any."""
        raise NotImplementedError()


def charge_description(items: List[CartItem]) -> str:
    return "Compra - " + ", ".join(i.name for i in items)
