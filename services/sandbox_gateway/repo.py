"""SQLAlchemy repository for the sandbox gateway.

Stores emulated Mercado Pago payments and the idempotency keys used to
create them. The connection string is read from ``DATABASE_URL`` and
defaults to a local SQLite file so the sandbox runs without a database
server.
"""

import hashlib
import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sandbox_gateway.db")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every pooled connection sees its own empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


def _now():
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Payment(Base):
    """An emulated gateway charge.

    Attributes:
        id: Numeric payment id, as the real gateway issues them.
        status: ``pending``, ``in_process``, ``approved``, ``rejected``,
            ``cancelled`` or ``refunded``.
        external_reference: Merchant correlation key, searchable.
        notification_url: Where status changes are announced.
    """

    __tablename__ = "payments"

    id = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    status = mapped_column(String(32), nullable=False)
    status_detail = mapped_column(String(64), nullable=False, default="")
    transaction_amount = mapped_column(Numeric(12, 2), nullable=False)
    currency_id = mapped_column(String(3), nullable=False, default="BRL")
    description = mapped_column(String(255), nullable=False, default="")
    payment_method_id = mapped_column(String(32), nullable=False)
    installments = mapped_column(Integer, nullable=False, default=1)
    external_reference = mapped_column(String(128), nullable=True, index=True)
    payer_email = mapped_column(String(254), nullable=False, default="")
    notification_url = mapped_column(Text, nullable=True)
    qr_code = mapped_column(Text, nullable=True)
    ticket_url = mapped_column(Text, nullable=True)
    barcode = mapped_column(String(64), nullable=True)
    date_created = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    date_last_updated = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class IdempotencyKey(Base):
    """Idempotency records for ``POST /v1/payments``.

    Attributes:
        key: ``X-Idempotency-Key`` sent by the merchant.
        request_hash: Canonical SHA-256 hex digest of the original request.
        payment_id: Payment created for the key, once created.
    """

    __tablename__ = "idempotency_keys"

    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    payment_id = mapped_column(BigInteger, nullable=True)


def canonical_hash(payload: dict) -> str:
    """SHA-256 of the payload serialized with sorted keys and compact separators."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@contextmanager
def get_session():
    """Yield a SQLAlchemy session bound to the configured engine."""
    with Session(engine, expire_on_commit=False) as s:
        yield s


def init_db():
    Base.metadata.create_all(engine)


class PaymentsRepo:
    """Repository for emulated payments."""

    def create(self, s: Session, **fields) -> Payment:
        payment = Payment(**fields)
        s.add(payment)
        s.flush()
        return payment

    def get(self, payment_id: int) -> Optional[Payment]:
        with get_session() as s:
            return s.get(Payment, payment_id)

    def search(self, external_reference: Optional[str], limit: int = 30) -> List[Payment]:
        """Payments for ``external_reference``, newest first."""
        with get_session() as s:
            stmt = select(Payment).order_by(Payment.date_created.desc(), Payment.id.desc()).limit(limit)
            if external_reference:
                stmt = stmt.where(Payment.external_reference == external_reference)
            return list(s.execute(stmt).scalars())

    def set_status(self, payment_id: int, status: str, status_detail: str = "") -> Optional[Payment]:
        with get_session() as s:
            payment = s.get(Payment, payment_id, with_for_update=True)
            if payment is None:
                return None
            payment.status = status
            payment.status_detail = status_detail or status
            s.commit()
            return payment


def amount(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))
