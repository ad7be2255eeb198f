"""Pydantic schemas for checkout submission, webhooks and order reads.

Request bodies are validated here before the services see them; pydantic
errors are turned into ``VALIDATION_ERROR`` responses by the views.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CPF_LEN = 11
KEY_MIN_LENGTH = 8
KEY_MAX_LENGTH = 128


class CustomerIn(BaseModel):
    """Payer data collected by the checkout form.

    Attributes:
        name: Full name; first token becomes ``first_name`` at the gateway.
        email: Normalized to lowercase.
        phone: Free-form phone number.
        cpf: Brazilian tax id. Punctuation is stripped; must have 11 digits.
    """

    name: str = Field(min_length=1, max_length=200)
    email: str = Field(max_length=254)
    phone: str = Field(default="", max_length=32)
    cpf: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v2 = " ".join(v.split())
        if not v2:
            raise ValueError("Name is required")
        return v2

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip().lower()
        if not EMAIL_RE.match(v2):
            raise ValueError("Invalid e-mail")
        return v2

    @field_validator("cpf")
    @classmethod
    def validate_cpf(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v or "")
        if digits and len(digits) != CPF_LEN:
            raise ValueError("CPF must have 11 digits")
        return digits


class CartItemIn(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(max_length=200)
    price: Decimal = Field(decimal_places=2)
    role: Literal["main", "bump"] = "main"

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class SubmitCheckoutDTO(BaseModel):
    """Schema for a checkout submission.

    Attributes:
        checkout_id: Checkout page the buyer came from.
        gateway_id: Gateway configured on that checkout, if any.
        environment: Force ``sandbox`` or ``production`` credentials.
        customer: Payer data.
        items: Cart lines (at least one ``main`` item).
        payment_method: ``pix``, ``credit_card`` or ``boleto``.
        card_token: Gateway card token; required for ``credit_card``.
        installments: Card installments (1-12).
        payment_method_id: Gateway method id (``visa``, ``master``,
            ``bolbradesco``...). Defaults per payment method.
        coupon_code: Optional coupon, matched case-insensitively.
        expected_total: Total shown to the buyer; must match the computed one.
        idempotency_key: Body alternative to the ``Idempotency-Key`` header.
    """

    checkout_id: Optional[str] = Field(default=None, max_length=64)
    gateway_id: Optional[str] = None
    environment: Optional[Literal["sandbox", "production"]] = None
    customer: CustomerIn
    items: List[CartItemIn] = Field(min_length=1)
    payment_method: Literal["pix", "credit_card", "boleto"]
    card_token: Optional[str] = None
    installments: int = Field(default=1, ge=1, le=12)
    payment_method_id: Optional[str] = None
    coupon_code: Optional[str] = Field(default=None, max_length=32)
    expected_total: Optional[Decimal] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=KEY_MIN_LENGTH, max_length=KEY_MAX_LENGTH)


class WebhookEventDTO(BaseModel):
    """Gateway notification body.

    Accepts both the current shape (``{"type": "payment", "data": {"id": ..}}``)
    and the older feed shape (``{"topic": "payment", "id": ..}``).
    """

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    id: Optional[Union[int, str]] = None
    data: Optional[dict] = None
    live_mode: Optional[bool] = None

    @property
    def is_payment(self) -> bool:
        return (self.type or self.topic or "").lower() == "payment"

    @property
    def payment_id(self) -> Optional[str]:
        if self.data and self.data.get("id") not in (None, ""):
            return str(self.data["id"])
        if self.topic and self.id not in (None, ""):
            return str(self.id)
        return None

    @property
    def event_name(self) -> str:
        return self.action or self.type or self.topic or ""


class PaymentReadDTO(BaseModel):
    id: str
    seq: int
    transaction_id: Optional[str] = None
    raw_status: str
    status: str
    created_at: datetime


class OrderItemReadDTO(BaseModel):
    product_id: str
    name: str
    unit_price: str
    role: str


class OrderReadDTO(BaseModel):
    id: str
    internal_id: Optional[int] = None
    external_reference: str
    status: str
    payment_method: str
    currency: str
    subtotal_amount: str
    bump_amount: str
    discount_amount: str
    total_amount: str
    coupon_code: Optional[str] = None
    customer_email: Optional[str] = None
    transaction_id: Optional[str] = None
    status_checked_at: Optional[datetime] = None
    created_at: datetime
    items: Optional[List[OrderItemReadDTO]] = None
    payments: Optional[List[PaymentReadDTO]] = None
