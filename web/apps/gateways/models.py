import uuid

from django.core.exceptions import ValidationError
from django.db import models


class Gateway(models.Model):
    """A configured payment gateway account and its credential sets.

    Sandbox and production key pairs live in separate columns instead of a
    free-form JSON blob; the legacy pair covers accounts configured before
    the split.
    """

    class Provider(models.TextChoices):
        MERCADO_PAGO = "mercado_pago"

    class Environment(models.TextChoices):
        SANDBOX = "sandbox"
        PRODUCTION = "production"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120)
    provider = models.CharField(max_length=32, choices=Provider.choices, default=Provider.MERCADO_PAGO)
    environment = models.CharField(max_length=16, choices=Environment.choices, default=Environment.SANDBOX)
    is_active = models.BooleanField(default=True)

    sandbox_public_key = models.CharField(max_length=255, blank=True, default="")
    sandbox_access_token = models.CharField(max_length=255, blank=True, default="")
    production_public_key = models.CharField(max_length=255, blank=True, default="")
    production_access_token = models.CharField(max_length=255, blank=True, default="")
    legacy_public_key = models.CharField(max_length=255, blank=True, default="")
    legacy_access_token = models.CharField(max_length=255, blank=True, default="")

    webhook_secret = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "gateways"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.name} ({self.provider}, {self.environment})"

    def clean(self):
        # the declared environment must have a complete pair
        if self.environment == self.Environment.PRODUCTION:
            pair = (self.production_public_key, self.production_access_token)
        else:
            pair = (self.sandbox_public_key, self.sandbox_access_token)
        if not all(v.strip() for v in pair):
            raise ValidationError(
                {"environment": f"{self.environment} credentials require both public key and access token"}
            )
