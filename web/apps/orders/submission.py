"""Checkout submission orchestrator.

``SubmissionService.submit`` validates a checkout, prices it through the
money engine, resolves the gateway credentials, sends one charge to the
gateway and records the outcome. The outcome rules:

- gateway 2xx: a ``pending`` order then its payment (transaction id, raw
  status); a synchronous terminal status is applied through the same
  transition routine the reconciler uses.
- gateway 4xx: ``GatewayRejected``; nothing is persisted.
- gateway 5xx, unusable body or read timeout: the charge may exist, so a
  ``pending`` order and a payment without transaction id are recorded before
  the error is raised with the ``order_id``; reconciliation settles it.
- request never sent: ``GatewayUnavailable``; nothing is persisted.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from django.conf import settings

from apps.gateways.credentials import ResolvedCredentials

from .domain import (
    CartItem,
    ChargeRequest,
    Customer,
    GatewayPort,
    ItemRole,
    OrderStatus,
    PaymentMethod,
    TransitionSource,
    charge_description,
)
from .errors import GatewayRejected, GatewayTimeout, GatewayUnavailable, ValidationError
from .money import apply_coupon, compute_order, is_valid_cart_item
from .schemas import SubmitCheckoutDTO

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    order_id: str
    external_reference: str
    status: OrderStatus
    transaction_id: Optional[str]
    environment: str
    total: Decimal
    redirect: dict = field(default_factory=dict)
    degraded: bool = False

    def to_body(self) -> dict:
        return {
            "order_id": self.order_id,
            "external_reference": self.external_reference,
            "status": OrderStatus(self.status).value,
            "transaction_id": self.transaction_id,
            "environment": self.environment,
            "total": str(self.total),
            "redirect": self.redirect,
        }


def build_redirect(method: PaymentMethod, order_id: str, payment) -> dict:
    """Redirect descriptor for the checkout front-end, chosen by payment method."""
    method = PaymentMethod(method)
    confirmation = settings.CHECKOUT_CONFIRMATION_PATH.format(order_id=order_id)
    if method == PaymentMethod.PIX:
        return {
            "type": "pix",
            "url": settings.CHECKOUT_PIX_PATH.format(order_id=order_id),
            "qr_code": payment.qr_code,
            "qr_code_base64": payment.qr_code_base64,
        }
    if method == PaymentMethod.BOLETO:
        return {"type": "boleto", "url": confirmation, "ticket_url": payment.ticket_url, "barcode": payment.barcode}
    return {"type": "confirmation", "url": confirmation}


class SubmissionService:
    """Orchestrates one checkout submission against the payment gateway."""

    def __init__(self, gateways, orders, client_factory: Callable[[ResolvedCredentials], GatewayPort]):
        self.gateways = gateways
        self.orders = orders
        self.client_factory = client_factory

    def _validate(self, dto: SubmitCheckoutDTO, idempotency_key: Optional[str]):
        if not idempotency_key:
            raise ValidationError("idempotency key is required", field="idempotency_key")

        items = [CartItem(id=i.id, name=i.name, price=i.price, role=ItemRole(i.role)) for i in dto.items]
        invalid = [i.id for i in items if not is_valid_cart_item(i)]
        if invalid:
            raise ValidationError("invalid cart items", items=invalid)
        if not any(i.role == ItemRole.MAIN for i in items):
            raise ValidationError("cart has no main item", field="items")

        method = PaymentMethod(dto.payment_method)
        if method == PaymentMethod.CREDIT_CARD:
            if not (dto.card_token or "").strip():
                raise ValidationError("card token is required for credit_card", field="card_token")
            if dto.installments < 1:
                raise ValidationError("installments must be >= 1", field="installments")
        return items, method

    def submit(self, dto: SubmitCheckoutDTO, idempotency_key: Optional[str] = None) -> SubmissionResult:
        """Submit a checkout.

        Args:
            dto: Validated request body.
            idempotency_key: Caller's key (header); falls back to
                ``dto.idempotency_key``. Used as the order's external
                reference and as the gateway idempotency header.

        Returns:
            SubmissionResult with the order id, status and redirect.

        Raises:
            ValidationError, NoGateway, MissingCredentials: before any network call.
            GatewayRejected, GatewayTimeout, GatewayUnavailable: gateway outcomes.
        """
        key = idempotency_key or dto.idempotency_key
        items, method = self._validate(dto, key)

        total = compute_order(items)
        if dto.coupon_code:
            total = apply_coupon(total, dto.coupon_code)
        if dto.expected_total is not None and Decimal(dto.expected_total).quantize(Decimal("0.01")) != total.total:
            raise ValidationError(
                "total does not match the cart", expected_total=str(dto.expected_total), total=str(total.total)
            )

        resolved = self.gateways.resolve(gateway_id=dto.gateway_id, environment=dto.environment)
        if resolved.degraded:
            logger.warning(
                "using inactive gateway",
                extra={"gateway_id": resolved.gateway_id, "strategy": resolved.strategy},
            )

        customer = Customer(
            name=dto.customer.name, email=dto.customer.email, phone=dto.customer.phone, cpf=dto.customer.cpf
        )
        charge = ChargeRequest(
            amount=total.total,
            currency=settings.CHECKOUT_CURRENCY,
            description=charge_description(list(total.main_items) + list(total.bump_items)),
            payment_method=method,
            payment_method_id=dto.payment_method_id or "",
            external_reference=key,
            customer=customer,
            token=dto.card_token,
            installments=dto.installments,
            notification_url=settings.WEBHOOK_PUBLIC_URL or None,
        )
        record = dict(
            external_reference=key,
            total=total,
            payment_method=method,
            currency=charge.currency,
            customer=customer,
            checkout_id=dto.checkout_id or "",
            environment=resolved.environment,
            gateway_id=resolved.gateway_id,
        )

        client = self.client_factory(resolved)
        try:
            payment = client.create_payment(charge, key)
        except GatewayRejected as e:
            if 400 <= e.status_code < 500:
                logger.info(
                    "charge rejected",
                    extra={"external_reference": key, "gateway_status": e.status_code, "reason": e.message},
                )
                raise
            order, _ = self.orders.record_submission(gateway_payment=None, **record)
            logger.error(
                "charge outcome unknown",
                extra={"external_reference": key, "order_id": str(order.pk), "gateway_status": e.status_code},
            )
            raise GatewayRejected(e.status_code, e.message, order_id=str(order.pk)) from e
        except GatewayTimeout as e:
            order, _ = self.orders.record_submission(gateway_payment=None, **record)
            logger.error("charge timed out", extra={"external_reference": key, "order_id": str(order.pk)})
            raise GatewayTimeout(e.message, order_id=str(order.pk)) from e
        except GatewayUnavailable:
            logger.error("gateway unavailable", extra={"external_reference": key})
            raise

        order, _ = self.orders.record_submission(gateway_payment=payment, **record)
        # pending -> pending is a no-op; terminal sync answers (approved card) are applied here
        result = self.orders.transition(order.pk, payment.mapped_status, TransitionSource.SUBMISSION, payment.status)

        logger.info(
            "checkout submitted",
            extra={
                "order_id": str(order.pk),
                "external_reference": key,
                "transaction_id": payment.id,
                "gateway_status": payment.status,
                "environment": resolved.environment,
            },
        )
        return SubmissionResult(
            order_id=str(order.pk),
            external_reference=key,
            status=result.status,
            transaction_id=payment.id,
            environment=resolved.environment,
            total=total.total,
            redirect=build_redirect(method, str(order.pk), payment),
            degraded=resolved.degraded,
        )
