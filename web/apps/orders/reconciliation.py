"""Reconciliation of orders against the gateway's authoritative record.

Two entry points share one routine:

- ``Reconciler.handle_notification`` is driven by gateway webhooks. The
  notification only names a transaction; its status and amount are never
  trusted. The payment is re-fetched from the gateway and the order found by
  ``external_reference`` (or by the linked transaction id).
- ``Reconciler.poll`` is driven by the front-end or an operator when a
  webhook may have been missed.

Both map the gateway status and apply it with ``OrderRepository.transition``
(monotonic rule, compare-and-swap). Webhooks are always acknowledged; the
``Ack`` only says whether anything was processed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from apps.gateways.credentials import ResolvedCredentials

from .domain import (
    GatewayPayment,
    GatewayPort,
    OrderStatus,
    TransitionDecision,
    TransitionResult,
    TransitionSource,
)
from .errors import GatewayError, MissingCredentials, NoGateway, OrderNotFound, ReconciliationAnomaly
from .schemas import WebhookEventDTO
from .signatures import verify_signature

logger = logging.getLogger(__name__)

# no further transition is reachable from these, so polling skips the gateway
SETTLED_STATUSES = frozenset({OrderStatus.FAILED, OrderStatus.REFUNDED})


@dataclass
class Ack:
    processed: bool
    outcome: str
    message: str = ""
    order_id: Optional[str] = None

    def to_body(self) -> dict:
        body = {"success": self.processed, "outcome": self.outcome}
        if self.message:
            body["message"] = self.message
        return body


@dataclass
class PollResult:
    order_id: str
    status: OrderStatus
    last_checked_at: datetime
    changed: bool
    outcome: str

    def to_body(self) -> dict:
        return {
            "order_id": self.order_id,
            "status": OrderStatus(self.status).value,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "changed": self.changed,
            "outcome": self.outcome,
        }


class Reconciler:
    def __init__(self, gateways, orders, client_factory: Callable[[ResolvedCredentials], GatewayPort]):
        self.gateways = gateways
        self.orders = orders
        self.client_factory = client_factory

    def _resolve(self, gateway_id=None, environment=None) -> ResolvedCredentials:
        return self.gateways.resolve(gateway_id=gateway_id, environment=environment or None)

    def _apply(self, order, gateway_payment: GatewayPayment, source: TransitionSource) -> TransitionResult:
        payment = None
        if gateway_payment.id:
            payment = order.payments.filter(transaction_id=gateway_payment.id).first()
        if payment is None:
            # unknown-outcome attempts are recorded without a transaction id
            payment = order.payments.filter(transaction_id__isnull=True).order_by("-seq", "-created_at").first()

        if gateway_payment.transaction_amount is not None and gateway_payment.transaction_amount != order.total_amount:
            logger.warning(
                "amount mismatch",
                extra={
                    "order_id": str(order.pk),
                    "transaction_id": gateway_payment.id,
                    "gateway_amount": str(gateway_payment.transaction_amount),
                    "order_amount": str(order.total_amount),
                },
            )

        result = self.orders.transition(
            order.pk,
            gateway_payment.mapped_status,
            source,
            gateway_payment.status,
            payment=payment,
            gateway_payment=gateway_payment,
        )
        if result.decision == TransitionDecision.ANOMALY:
            anomaly = ReconciliationAnomaly(
                f"refused {result.previous.value} -> {result.target.value}", order_id=str(order.pk)
            )
            logger.warning(
                anomaly.message,
                extra={
                    "code": anomaly.code,
                    "order_id": str(order.pk),
                    "transaction_id": gateway_payment.id,
                    "gateway_status": gateway_payment.status,
                    "source": TransitionSource(source).value,
                },
            )
        elif result.changed:
            logger.info(
                "order status changed",
                extra={
                    "order_id": str(order.pk),
                    "from_status": result.previous.value,
                    "to_status": result.target.value,
                    "source": TransitionSource(source).value,
                },
            )
        return result

    def handle_notification(
        self,
        event: WebhookEventDTO,
        signature: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Ack:
        """Process one gateway notification. Never raises for business outcomes.

        Args:
            event: Parsed notification body (or query-string notification).
            signature: ``x-signature`` header, checked when the gateway has a
                webhook secret.
            request_id: ``x-request-id`` header, part of the signed manifest.

        Returns:
            Ack; ``processed`` is False for ignored, unverifiable or
            unmatched notifications.
        """
        payload = event.model_dump(mode="json", exclude_none=True)
        tx = event.payment_id

        if not event.is_payment or not tx:
            self.orders.log_webhook(payload=payload, event=event.event_name, outcome="ignored")
            return Ack(False, "ignored", "unsupported notification")

        local = self.orders.find_payment_by_transaction_id(tx)
        try:
            resolved = self._resolve(
                gateway_id=str(local.gateway_id) if local and local.gateway_id else None,
                environment=local.order.environment if local else None,
            )
        except (NoGateway, MissingCredentials) as e:
            logger.error("webhook without usable gateway", extra={"transaction_id": tx, "code": e.code})
            self.orders.log_webhook(payload=payload, event=event.event_name, transaction_id=tx, outcome=e.code.lower())
            return Ack(False, e.code.lower(), e.message)

        if resolved.webhook_secret and not verify_signature(resolved.webhook_secret, signature, request_id, tx):
            logger.warning("webhook signature mismatch", extra={"transaction_id": tx, "gateway_id": resolved.gateway_id})
            self.orders.log_webhook(
                payload=payload,
                event=event.event_name,
                transaction_id=tx,
                gateway_id=resolved.gateway_id,
                outcome="bad_signature",
            )
            return Ack(False, "bad_signature", "invalid signature")

        client = self.client_factory(resolved)
        try:
            gateway_payment = client.get_payment(tx)
        except GatewayError as e:
            logger.error("webhook re-fetch failed", extra={"transaction_id": tx, "code": e.code, "reason": e.message})
            self.orders.log_webhook(
                payload=payload,
                event=event.event_name,
                transaction_id=tx,
                gateway_id=resolved.gateway_id,
                outcome="gateway_error",
            )
            return Ack(False, "gateway_error", e.message)

        order = self.orders.find_by_external_reference(gateway_payment.external_reference)
        if order is None and local is not None:
            order = local.order
        if order is None:
            logger.warning(
                "webhook for unknown order",
                extra={
                    "code": OrderNotFound.code,
                    "transaction_id": tx,
                    "external_reference": gateway_payment.external_reference,
                },
            )
            self.orders.log_webhook(
                payload=payload,
                event=event.event_name,
                transaction_id=tx,
                gateway_id=resolved.gateway_id,
                outcome="order_not_found",
            )
            return Ack(False, "order_not_found", "order not found")

        result = self._apply(order, gateway_payment, TransitionSource.WEBHOOK)
        self.orders.touch_checked(order.pk)
        self.orders.log_webhook(
            payload=payload,
            event=event.event_name,
            transaction_id=tx,
            gateway_id=resolved.gateway_id,
            processed=True,
            outcome=result.decision.value,
        )
        return Ack(True, result.decision.value, order_id=str(order.pk))

    def poll(self, order_id) -> PollResult:
        """Re-check one order against the gateway.

        ``status_checked_at`` is stamped on every call, including failed
        gateway reads, so callers can throttle on ``last_checked_at``.

        Raises:
            OrderNotFound: Unknown order id.
            GatewayTimeout, GatewayUnavailable, GatewayRejected: gateway read
                failed; ``details`` carry the stored status.
            NoGateway, MissingCredentials: no usable gateway.
        """
        order = self.orders.get(order_id)
        current = OrderStatus(order.status)
        if current in SETTLED_STATUSES:
            checked = self.orders.touch_checked(order.pk)
            return PollResult(str(order.pk), current, checked, False, "settled")

        payment = order.latest_payment()
        resolved = self._resolve(
            gateway_id=str(payment.gateway_id) if payment and payment.gateway_id else None,
            environment=order.environment,
        )
        client = self.client_factory(resolved)
        try:
            if payment is not None and payment.transaction_id:
                gateway_payment = client.get_payment(payment.transaction_id)
            else:
                gateway_payment = client.find_by_external_reference(order.external_reference)
        except GatewayError as e:
            checked = self.orders.touch_checked(order.pk)
            e.order_id = str(order.pk)
            e.details.update(order_id=str(order.pk), status=current.value, last_checked_at=checked.isoformat())
            raise
        checked = self.orders.touch_checked(order.pk)

        if gateway_payment is None:
            return PollResult(str(order.pk), current, checked, False, "not_found_at_gateway")

        result = self._apply(order, gateway_payment, TransitionSource.POLL)
        return PollResult(str(order.pk), result.status, checked, result.changed, result.decision.value)
