"""Repository layer for orders, payments and their audit trail.

Keeps the services decoupled from Django ORM details: services pass domain
values in and get model instances or domain results back. Status changes go
through ``transition`` only, which performs the compare-and-swap update and
records the audit row in the same transaction.
"""

import logging
import uuid
from typing import Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import (
    Customer,
    GatewayPayment,
    OrderStatus,
    OrderTotal,
    PaymentMethod,
    TransitionDecision,
    TransitionResult,
    TransitionSource,
    decide_transition,
)
from .errors import OrderNotFound
from .models import (
    CustomerModel,
    OrderItemModel,
    OrderModel,
    PaymentModel,
    StatusTransitionModel,
    WebhookLogModel,
)

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5
UNKNOWN_GATEWAY_STATUS = "unknown"


class OrderRepository:
    """Persists orders and payments using the Django ORM."""

    # ---- reads ----
    def get(self, order_id) -> OrderModel:
        """Return the order or raise ``OrderNotFound`` (also for malformed ids)."""
        try:
            oid = uuid.UUID(str(order_id))
        except ValueError:
            raise OrderNotFound(f"order {order_id} not found")
        try:
            return OrderModel.objects.get(pk=oid)
        except OrderModel.DoesNotExist:
            raise OrderNotFound(f"order {order_id} not found")

    def find_by_external_reference(self, external_reference: Optional[str]) -> Optional[OrderModel]:
        if not external_reference:
            return None
        return OrderModel.objects.filter(external_reference=external_reference).first()

    def find_payment_by_transaction_id(self, transaction_id: Optional[str]) -> Optional[PaymentModel]:
        if not transaction_id:
            return None
        return (
            PaymentModel.objects.select_related("order")
            .filter(transaction_id=str(transaction_id))
            .order_by("-seq", "-created_at")
            .first()
        )

    # ---- submission ----
    @transaction.atomic
    def record_submission(
        self,
        *,
        external_reference: str,
        total: OrderTotal,
        payment_method: PaymentMethod,
        currency: str,
        customer: Customer,
        checkout_id: str = "",
        environment: str = "",
        gateway_id: Optional[str] = None,
        gateway_payment: Optional[GatewayPayment] = None,
    ) -> Tuple[OrderModel, PaymentModel]:
        """Insert (or reuse) the order for ``external_reference``, then its payment.

        The order row is always written before the payment row. A repeated
        submission with the same external reference reuses the existing order
        and appends a new payment attempt, unless the gateway returned the
        same transaction id, in which case that payment row is refreshed.

        Args:
            gateway_payment: Gateway response, or ``None`` when the outcome of
                the charge is unknown (timeout, 5xx, unusable body).

        Returns:
            tuple[OrderModel, PaymentModel]
        """
        customer_row = self._upsert_customer(customer)
        order = OrderModel.objects.select_for_update().filter(external_reference=external_reference).first()
        if order is None:
            try:
                # Nested savepoint: a concurrent insert of the same reference only rolls back this block.
                with transaction.atomic():
                    order = OrderModel.objects.create(
                        external_reference=external_reference,
                        checkout_id=checkout_id or "",
                        status=OrderStatus.PENDING.value,
                        payment_method=PaymentMethod(payment_method).value,
                        currency=currency,
                        subtotal_amount=total.subtotal,
                        bump_amount=total.bump_total,
                        discount_amount=total.discounts,
                        total_amount=total.total,
                        coupon_code=total.coupon_code or "",
                        customer=customer_row,
                        customer_email=customer_row.email,
                        environment=environment,
                    )
                    OrderItemModel.objects.bulk_create(
                        [
                            OrderItemModel(
                                order=order,
                                product_id=item.id,
                                name=item.name,
                                unit_price=item.price,
                                role=item.role.value if hasattr(item.role, "value") else str(item.role),
                            )
                            for item in total.items
                        ]
                    )
            except IntegrityError:
                order = OrderModel.objects.select_for_update().get(external_reference=external_reference)

        payment = self._record_payment(order, gateway_id, gateway_payment)
        return order, payment

    def _upsert_customer(self, customer: Customer) -> CustomerModel:
        email = customer.email.strip().lower()
        row, created = CustomerModel.objects.get_or_create(
            email=email,
            defaults={"name": customer.name, "phone": customer.phone or "", "cpf": customer.cpf or ""},
        )
        if not created:
            changed = []
            for attr in ("name", "phone", "cpf"):
                value = getattr(customer, attr) or ""
                if value and getattr(row, attr) != value:
                    setattr(row, attr, value)
                    changed.append(attr)
            if changed:
                row.save(update_fields=changed)
        return row

    def _record_payment(
        self, order: OrderModel, gateway_id: Optional[str], gateway_payment: Optional[GatewayPayment]
    ) -> PaymentModel:
        if gateway_payment is not None and gateway_payment.id:
            existing = order.payments.filter(transaction_id=gateway_payment.id).first()
            if existing is not None:
                self.update_payment(existing, gateway_payment)
                return existing

        seq = order.payments.count() + 1
        if gateway_payment is None:
            return PaymentModel.objects.create(
                order=order,
                seq=seq,
                gateway_id=gateway_id,
                transaction_id=None,
                raw_status=UNKNOWN_GATEWAY_STATUS,
                status=OrderStatus.PENDING.value,
            )
        return PaymentModel.objects.create(
            order=order,
            seq=seq,
            gateway_id=gateway_id,
            transaction_id=gateway_payment.id,
            raw_status=gateway_payment.status or "",
            status=gateway_payment.mapped_status.value,
            raw_response=gateway_payment.raw,
        )

    # ---- reconciliation ----
    def update_payment(self, payment: PaymentModel, gateway_payment: GatewayPayment) -> PaymentModel:
        """Store the gateway's latest view on a payment row (and link its id)."""
        fields = ["raw_status", "status", "raw_response", "updated_at"]
        if not payment.transaction_id and gateway_payment.id:
            payment.transaction_id = gateway_payment.id
            fields.append("transaction_id")
        payment.raw_status = gateway_payment.status or ""
        payment.status = gateway_payment.mapped_status.value
        payment.raw_response = gateway_payment.raw
        payment.save(update_fields=fields)
        return payment

    def transition(
        self,
        order_id,
        target: OrderStatus,
        source: TransitionSource,
        gateway_status: str = "",
        payment: Optional[PaymentModel] = None,
        gateway_payment: Optional[GatewayPayment] = None,
    ) -> TransitionResult:
        """Atomically move an order towards ``target`` under the monotonic rule.

        Reads the stored status, decides, and writes with
        ``UPDATE ... WHERE id = ? AND status = <read value>``. When another
        writer got there first the update touches no rows and the decision
        is taken again against the fresh status.

        When ``payment`` and ``gateway_payment`` are given, the payment row is
        synced in the same transaction: its status follows the gateway only
        for applied and no-op decisions. A stale or anomalous gateway status
        only reaches the audit row.

        Returns:
            TransitionResult describing the decision actually taken.

        Raises:
            OrderNotFound: If the order vanished.
        """
        target = OrderStatus(target)
        for _ in range(MAX_CAS_ATTEMPTS):
            with transaction.atomic():
                current = OrderModel.objects.filter(pk=order_id).values_list("status", flat=True).first()
                if current is None:
                    raise OrderNotFound(f"order {order_id} not found")
                current = OrderStatus(current)
                decision = decide_transition(current, target)

                if decision == TransitionDecision.APPLY:
                    updated = OrderModel.objects.filter(pk=order_id, status=current.value).update(
                        status=target.value, updated_at=timezone.now()
                    )
                    if updated != 1:
                        continue  # lost the race; decide again on the fresh status
                    self._audit(order_id, current, target, source, StatusTransitionModel.Outcome.APPLIED, gateway_status)
                elif decision == TransitionDecision.ANOMALY:
                    self._audit(order_id, current, target, source, StatusTransitionModel.Outcome.ANOMALY, gateway_status)

                if payment is not None and gateway_payment is not None:
                    self._sync_payment(payment, gateway_payment, decision)

                return TransitionResult(order_id=str(order_id), previous=current, target=target, decision=decision)

        raise RuntimeError(f"CAS_CONTENTION: order {order_id} kept changing during transition")

    def _sync_payment(self, payment: PaymentModel, gateway_payment: GatewayPayment, decision: TransitionDecision):
        row = PaymentModel.objects.select_for_update().get(pk=payment.pk)
        if decision in (TransitionDecision.APPLY, TransitionDecision.NOOP):
            self.update_payment(row, gateway_payment)
        elif not row.transaction_id and gateway_payment.id:
            row.transaction_id = gateway_payment.id
            row.save(update_fields=["transaction_id", "updated_at"])
        else:
            return
        payment.refresh_from_db()

    def _audit(self, order_id, current, target, source, outcome, gateway_status):
        StatusTransitionModel.objects.create(
            order_id=order_id,
            from_status=OrderStatus(current).value,
            to_status=OrderStatus(target).value,
            source=TransitionSource(source).value,
            outcome=outcome,
            gateway_status=gateway_status or "",
        )

    def touch_checked(self, order_id):
        """Stamp ``status_checked_at`` and return the timestamp used."""
        now = timezone.now()
        OrderModel.objects.filter(pk=order_id).update(status_checked_at=now)
        return now

    def log_webhook(
        self,
        *,
        payload: dict,
        event: str = "",
        transaction_id: str = "",
        gateway_id: Optional[str] = None,
        processed: bool = False,
        outcome: str = "",
    ) -> WebhookLogModel:
        return WebhookLogModel.objects.create(
            gateway_id=gateway_id,
            event=(event or "")[:64],
            transaction_id=(transaction_id or "")[:64],
            payload=payload if isinstance(payload, dict) else {"raw": payload},
            processed=processed,
            outcome=outcome,
        )
