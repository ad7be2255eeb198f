"""In-process stub adapter for the gateway port.

``GatewayStub`` implements ``GatewayPort`` without any network calls. It is
used by tests and local development when ``USE_HTTP_ADAPTERS`` is off.
Payments live in a class-level dict so that a stub built for the submission
and a stub built later for a webhook see the same charges.
"""

import itertools
import threading
from decimal import Decimal
from typing import Dict, Optional

from .domain import ChargeRequest, GatewayPayment, PaymentMethod
from .errors import GatewayRejected

REJECTED_TOKEN_PREFIX = "rejected"


class GatewayStub:
    """Deterministic gateway double.

    Rules:
        - ``credit_card`` charges are ``approved`` unless the card token
          starts with ``rejected``, which answers like the gateway's 400
          ``cc_rejected_insufficient_amount``.
        - ``pix`` and ``boleto`` charges start ``pending`` and carry QR /
          ticket data.
        - The same idempotency key returns the charge created the first time.
    """

    _payments: Dict[str, GatewayPayment] = {}
    _by_key: Dict[str, str] = {}
    _ids = itertools.count(1)
    _lock = threading.Lock()

    def __init__(self, access_token: str = "", base_url: str = ""):
        self.access_token = access_token
        self.base_url = base_url

    @classmethod
    def reset(cls):
        with cls._lock:
            cls._payments.clear()
            cls._by_key.clear()
            cls._ids = itertools.count(1)

    @classmethod
    def set_status(cls, transaction_id: str, status: str, status_detail: Optional[str] = None) -> GatewayPayment:
        """Change a stored charge, as the gateway would after the buyer pays."""
        with cls._lock:
            payment = cls._payments[str(transaction_id)]
            payment.status = status
            payment.status_detail = status_detail or status
            payment.raw = {**payment.raw, "status": status, "status_detail": payment.status_detail}
            return payment

    def create_payment(self, charge: ChargeRequest, idempotency_key: str) -> GatewayPayment:
        with self._lock:
            if idempotency_key in self._by_key:
                return self._payments[self._by_key[idempotency_key]]

            method = PaymentMethod(charge.payment_method)
            if method == PaymentMethod.CREDIT_CARD and (charge.token or "").startswith(REJECTED_TOKEN_PREFIX):
                raise GatewayRejected(400, "cc_rejected_insufficient_amount")

            tx = f"tx_{next(self._ids)}"
            status = "approved" if method == PaymentMethod.CREDIT_CARD else "pending"
            payment = GatewayPayment(
                id=tx,
                status=status,
                status_detail="accredited" if status == "approved" else "pending_waiting_transfer",
                transaction_amount=Decimal(charge.amount),
                external_reference=charge.external_reference,
            )
            if method == PaymentMethod.PIX:
                payment.qr_code = f"00020126580014br.gov.bcb.pix-{tx}"
                payment.qr_code_base64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk"
            elif method == PaymentMethod.BOLETO:
                payment.ticket_url = f"https://sandbox.local/boleto/{tx}"
                payment.barcode = "23793381286000000000000000000000000000000000"
            payment.raw = {
                "id": tx,
                "status": status,
                "status_detail": payment.status_detail,
                "transaction_amount": str(charge.amount),
                "external_reference": charge.external_reference,
            }
            self._payments[tx] = payment
            self._by_key[idempotency_key] = tx
            return payment

    def get_payment(self, transaction_id: str) -> GatewayPayment:
        with self._lock:
            try:
                return self._payments[str(transaction_id)]
            except KeyError:
                raise GatewayRejected(404, "payment not found")

    def find_by_external_reference(self, external_reference: str) -> Optional[GatewayPayment]:
        with self._lock:
            matches = [p for p in self._payments.values() if p.external_reference == external_reference]
        return matches[-1] if matches else None
