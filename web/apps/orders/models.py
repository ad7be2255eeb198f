import uuid

from django.db import models, transaction


class Status(models.TextChoices):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class CustomerModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=32, blank=True, default="")
    cpf = models.CharField(max_length=11, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "customers"


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Order number shown in the dashboard
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class PaymentMethod(models.TextChoices):
        PIX = "pix"
        CREDIT_CARD = "credit_card"
        BOLETO = "boleto"

    external_reference = models.CharField(max_length=128, unique=True)
    checkout_id = models.CharField(max_length=64, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices)
    currency = models.CharField(max_length=3, default="BRL")

    subtotal_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    bump_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    coupon_code = models.CharField(max_length=32, blank=True, default="")

    customer = models.ForeignKey(CustomerModel, on_delete=models.PROTECT, related_name="orders", null=True)
    customer_email = models.EmailField(blank=True, default="")
    environment = models.CharField(max_length=16, blank=True, default="")

    # last reconciliation attempt (webhook or poll)
    status_checked_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)

    def latest_payment(self):
        return self.payments.order_by("-seq", "-created_at").first()


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.CharField(max_length=64)
    name = models.CharField(max_length=200)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    role = models.CharField(max_length=8, default="main")

    class Meta:
        db_table = "order_items"


class PaymentModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # attempt number within the order; breaks created_at ties
    seq = models.PositiveIntegerField(default=1, editable=False)
    order = models.ForeignKey(OrderModel, on_delete=models.PROTECT, related_name="payments")
    gateway = models.ForeignKey("gateways.Gateway", on_delete=models.PROTECT, related_name="payments", null=True)
    transaction_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    raw_status = models.CharField(max_length=32, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    raw_response = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payments"
        ordering = ["-seq", "-created_at"]


class StatusTransitionModel(models.Model):
    """Audit row for every applied transition and every rejected anomaly."""

    class Outcome(models.TextChoices):
        APPLIED = "applied"
        ANOMALY = "anomaly"

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="transitions")
    from_status = models.CharField(max_length=16)
    to_status = models.CharField(max_length=16)
    source = models.CharField(max_length=16)
    outcome = models.CharField(max_length=16, choices=Outcome.choices)
    gateway_status = models.CharField(max_length=32, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_status_transitions"
        ordering = ["created_at", "id"]


class WebhookLogModel(models.Model):
    gateway = models.ForeignKey("gateways.Gateway", on_delete=models.SET_NULL, null=True, related_name="webhook_logs")
    event = models.CharField(max_length=64, blank=True, default="")
    transaction_id = models.CharField(max_length=64, blank=True, default="")
    payload = models.JSONField(default=dict, blank=True)
    processed = models.BooleanField(default=False)
    outcome = models.CharField(max_length=32, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "webhook_logs"
        ordering = ["-created_at"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=128, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict, blank=True)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
