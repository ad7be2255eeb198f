"""Sandbox gateway API built with FastAPI.

Emulates the subset of the Mercado Pago payments API the checkout service
talks to, so the whole flow (submission, webhook, polling) can run without
the real gateway:

- ``POST /v1/payments`` creates a charge, deduplicated on ``X-Idempotency-Key``.
- ``GET /v1/payments/{id}`` and ``GET /v1/payments/search`` read charges.
- ``POST /sandbox/payments/{id}/status`` changes a charge's status and posts
  the notification to the charge's ``notification_url``.

Behavior is driven by the request: a card token starting with ``rejected``
is refused with 400, ``pending`` leaves the card in process, any other card
token is approved. PIX and boleto charges start ``pending``.
"""

import base64
import hashlib
import hmac
import logging
import os
import time
import uuid
from typing import Annotated, Optional

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from repo import IdempotencyKey, Payment, PaymentsRepo, amount, canonical_hash, engine, get_session, init_db

app = FastAPI(title="Sandbox Gateway")

WEBHOOK_SECRET = os.getenv("SANDBOX_WEBHOOK_SECRET", "")
NOTIFY_TIMEOUT = float(os.getenv("SANDBOX_NOTIFY_TIMEOUT", "5"))
OFFLINE_METHODS = {"pix", "bolbradesco", "boleto", "pec"}
KNOWN_STATUSES = {"pending", "in_process", "approved", "authorized", "rejected", "cancelled", "refunded", "charged_back"}

logger = logging.getLogger("sandbox_gateway")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class Identification(BaseModel):
    type: str = "CPF"
    number: str = ""


class Payer(BaseModel):
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    identification: Optional[Identification] = None


class PaymentRequest(BaseModel):
    """Request body for ``POST /v1/payments``.

    Attributes:
        transaction_amount: Positive amount in major currency units.
        payment_method_id: ``pix``, ``bolbradesco`` or a card brand.
        token: Card token; required for card methods.
        external_reference: Merchant correlation key.
    """

    transaction_amount: float = Field(gt=0)
    currency_id: str = "BRL"
    description: str = ""
    payment_method_id: str
    token: Optional[str] = None
    installments: int = Field(default=1, ge=1)
    external_reference: Optional[str] = None
    notification_url: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    payer: Payer = Field(default_factory=Payer)


class StatusChange(BaseModel):
    status: str
    status_detail: str = ""


def mp_error(status_code: int, message: str, error: str) -> JSONResponse:
    return JSONResponse({"message": message, "error": error, "status": status_code, "cause": []}, status_code=status_code)


def to_resource(p: Payment) -> dict:
    """Serialize a payment the way the real gateway does."""
    body = {
        "id": p.id,
        "status": p.status,
        "status_detail": p.status_detail,
        "transaction_amount": float(p.transaction_amount),
        "currency_id": p.currency_id,
        "description": p.description,
        "payment_method_id": p.payment_method_id,
        "installments": p.installments,
        "external_reference": p.external_reference,
        "payer": {"email": p.payer_email},
        "date_created": p.date_created.isoformat(),
        "date_last_updated": p.date_last_updated.isoformat(),
    }
    if p.qr_code:
        qr_base64 = base64.b64encode(p.qr_code.encode("utf-8")).decode("ascii")
        body["point_of_interaction"] = {"transaction_data": {"qr_code": p.qr_code, "qr_code_base64": qr_base64}}
    if p.ticket_url:
        body["transaction_details"] = {"external_resource_url": p.ticket_url}
        body["barcode"] = {"content": p.barcode}
    return body


def _initial_status(req: PaymentRequest):
    method = req.payment_method_id.lower()
    if method in OFFLINE_METHODS:
        return "pending", "pending_waiting_payment"
    if (req.token or "").startswith("pending"):
        return "in_process", "pending_contingency"
    return "approved", "accredited"


def _create(s, req: PaymentRequest) -> Payment:
    status, detail = _initial_status(req)
    fields = dict(
        status=status,
        status_detail=detail,
        transaction_amount=amount(req.transaction_amount),
        currency_id=req.currency_id,
        description=req.description,
        payment_method_id=req.payment_method_id,
        installments=req.installments,
        external_reference=req.external_reference or req.metadata.get("external_reference"),
        payer_email=req.payer.email,
        notification_url=req.notification_url,
    )
    payment = PaymentsRepo().create(s, **fields)
    method = req.payment_method_id.lower()
    if method == "pix":
        payment.qr_code = f"00020126SANDBOXPIX{payment.id:010d}5204000053039865802BR"
    elif method in OFFLINE_METHODS:
        payment.ticket_url = f"https://sandbox.local/boleto/{payment.id}"
        payment.barcode = f"{payment.id:047d}"
    return payment


def _sign(data_id: str, request_id: str) -> str:
    ts = str(int(time.time()))
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    v1 = hmac.new(WEBHOOK_SECRET.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={v1}"


def notify(payment: Payment) -> bool:
    """Post a payment notification to ``payment.notification_url``.

    Returns:
        bool: True when the receiver answered 2xx.
    """
    if not payment.notification_url:
        return False
    rid = str(uuid.uuid4())
    headers = {"x-request-id": rid}
    if WEBHOOK_SECRET:
        headers["x-signature"] = _sign(str(payment.id), rid)
    body = {"type": "payment", "action": "payment.updated", "live_mode": False, "data": {"id": str(payment.id)}}
    try:
        resp = httpx.post(payment.notification_url, json=body, headers=headers, timeout=NOTIFY_TIMEOUT)
    except httpx.HTTPError as e:
        logger.warning("notification failed", extra={"request_id": rid, "payment_id": payment.id, "reason": str(e)})
        return False
    logger.info(
        "notification sent", extra={"request_id": rid, "payment_id": payment.id, "status_code": resp.status_code}
    )
    return 200 <= resp.status_code < 300


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.post("/v1/payments", status_code=201)
def create_payment(
    req: PaymentRequest,
    authorization: Annotated[Optional[str], Header()] = None,
    idempotency_key: Annotated[Optional[str], Header(alias="X-Idempotency-Key")] = None,
):
    """Create a charge with optional idempotency.

    A retry with the same ``X-Idempotency-Key`` and body returns the charge
    created by the first request; the same key with a different body is
    answered with 409.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return mp_error(401, "unauthorized", "unauthorized")
    if (req.token or "").startswith("rejected"):
        return mp_error(400, "cc_rejected_insufficient_amount", "bad_request")
    if req.payment_method_id.lower() not in OFFLINE_METHODS and not req.token:
        return mp_error(400, "token is required for card payments", "bad_request")

    if not idempotency_key:
        with get_session() as s:
            payment = _create(s, req)
            s.commit()
            return to_resource(payment)

    payload_hash = canonical_hash(req.model_dump())
    with get_session() as s:
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if rec is None:
                return mp_error(500, "idempotency lookup failed", "internal_error")
            if rec.request_hash != payload_hash:
                return mp_error(409, "IDEMPOTENCY_CONFLICT", "conflict")
            if rec.payment_id:
                return to_resource(s.get(Payment, rec.payment_id))

        payment = _create(s, req)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.payment_id = payment.id
        s.commit()
        logger.info("payment created", extra={"payment_id": payment.id, "status": payment.status})
        return to_resource(payment)


@app.get("/v1/payments/search")
def search_payments(external_reference: Optional[str] = None, limit: int = 30):
    results = [to_resource(p) for p in PaymentsRepo().search(external_reference, limit=min(limit, 100))]
    return {"paging": {"total": len(results), "limit": limit, "offset": 0}, "results": results}


@app.get("/v1/payments/{payment_id}")
def get_payment(payment_id: int):
    payment = PaymentsRepo().get(payment_id)
    if payment is None:
        return mp_error(404, "Payment not found", "not_found")
    return to_resource(payment)


@app.post("/sandbox/payments/{payment_id}/status")
def change_status(payment_id: int, change: StatusChange):
    """Set a payment's status and notify the merchant."""
    if change.status not in KNOWN_STATUSES:
        return mp_error(400, f"unknown status {change.status}", "bad_request")
    payment = PaymentsRepo().set_status(payment_id, change.status, change.status_detail)
    if payment is None:
        return mp_error(404, "Payment not found", "not_found")
    notified = notify(payment)
    return {"payment": to_resource(payment), "notified": notified}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
