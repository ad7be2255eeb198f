"""HTTP gateway client with retries, circuit breaker and context headers.

``MercadoPagoClient`` implements ``GatewayPort`` over the Mercado Pago
payments API using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set by
  the edge middleware.
- A circuit breaker per provider so an unhealthy gateway is not hammered,
  with HALF_OPEN probing after a timeout.
- Retries with exponential backoff for status reads only (``GET`` is side
  effect free). Charge creation is never retried here; the caller's
  idempotency key is forwarded as ``X-Idempotency-Key`` so the caller can
  resubmit safely.

Transport failures are classified by whether the charge could have reached
the gateway: connect errors and connect/pool timeouts raise
``GatewayUnavailable`` (nothing was sent), read/write timeouts raise
``GatewayTimeout`` (outcome unknown).
"""

import logging
import re
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
from django.conf import settings

from edge.middleware import REQUEST_ID_CTX

from .domain import ChargeRequest, GatewayPayment, PaymentMethod
from .errors import GatewayRejected, GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)

NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0")
# gateway payment ids travel in the URL path
PAYMENT_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")
DEFAULT_METHOD_IDS = {
    PaymentMethod.PIX: "pix",
    PaymentMethod.BOLETO: "bolbradesco",
}


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN -> CLOSED on a successful probe; only one probe may be in
      flight; back to OPEN on failure.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state at call time.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for ``name``, creating it on first use."""
    with _breakers_lock:
        if name not in _breakers:
            _breakers[name] = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
        return _breakers[name]


def reset_breakers():
    with _breakers_lock:
        _breakers.clear()


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds)."""
    return (
        max(1, int(getattr(settings, "HTTP_RETRY_MAX", 3))),
        float(getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15)),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only when the request was never sent or the gateway answered 5xx."""
    if exc is not None:
        return isinstance(exc, NOT_SENT_ERRORS)
    return resp is not None and 500 <= resp.status_code < 600


def _error_message(resp) -> str:
    """Gateway error text, verbatim from ``message`` when the body has one."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        msg = body.get("message") or body.get("error")
        if msg:
            return str(msg)
    text = getattr(resp, "text", "") or ""
    return text[:200] or f"gateway answered {resp.status_code}"


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_payment(data) -> GatewayPayment:
    """Convert a Mercado Pago payment resource into ``GatewayPayment``.

    Raises:
        ValueError: If the body is not a payment resource (no ``id`` or
            ``status``).
    """
    if not isinstance(data, dict) or data.get("id") in (None, "") or not data.get("status"):
        raise ValueError("MALFORMED_PAYMENT")
    poi = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
    details = data.get("transaction_details") or {}
    barcode = data.get("barcode") or {}
    return GatewayPayment(
        id=str(data["id"]),
        status=str(data["status"]),
        status_detail=data.get("status_detail"),
        transaction_amount=_to_decimal(data.get("transaction_amount")),
        external_reference=data.get("external_reference") or (data.get("metadata") or {}).get("external_reference"),
        qr_code=poi.get("qr_code"),
        qr_code_base64=poi.get("qr_code_base64"),
        ticket_url=poi.get("ticket_url") or details.get("external_resource_url"),
        barcode=barcode.get("content") if isinstance(barcode, dict) else barcode or None,
        raw=data,
    )


def build_payment_payload(charge: ChargeRequest) -> dict:
    """Build the ``POST /v1/payments`` body for a charge."""
    method = PaymentMethod(charge.payment_method)
    payer = {
        "email": charge.customer.email,
        "first_name": charge.customer.first_name,
        "last_name": charge.customer.last_name,
    }
    if charge.customer.cpf:
        payer["identification"] = {"type": "CPF", "number": charge.customer.cpf}

    payload = {
        "transaction_amount": float(charge.amount),
        "currency_id": charge.currency,
        "description": charge.description,
        "payment_method_id": charge.payment_method_id or DEFAULT_METHOD_IDS.get(method, ""),
        "external_reference": charge.external_reference,
        "metadata": {"external_reference": charge.external_reference},
        "payer": payer,
    }
    # the gateway refuses notification urls it cannot reach
    if charge.notification_url and not any(h in charge.notification_url for h in LOCAL_HOSTS):
        payload["notification_url"] = charge.notification_url
    if method == PaymentMethod.CREDIT_CARD:
        payload["token"] = charge.token
        payload["installments"] = charge.installments
    return payload


# ---------------- Gateway Adapter ---------------- #

class MercadoPagoClient:
    """HTTP client for the Mercado Pago payments API."""

    breaker_name = "mercado_pago"

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        submit_timeout: Optional[float] = None,
        status_timeout: Optional[float] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.submit_timeout = submit_timeout or settings.GATEWAY_SUBMIT_TIMEOUT_SECS
        self.status_timeout = status_timeout or settings.GATEWAY_STATUS_TIMEOUT_SECS

    @property
    def breaker(self) -> CircuitBreaker:
        return get_breaker(self.breaker_name)

    def _before_call(self) -> str:
        try:
            return self.breaker.before_call()
        except RuntimeError as e:
            raise GatewayUnavailable(str(e)) from e

    def _headers(self, extra: Optional[dict] = None) -> dict:
        return _request_headers({"Authorization": f"Bearer {self.access_token}", **(extra or {})})

    def create_payment(self, charge: ChargeRequest, idempotency_key: str) -> GatewayPayment:
        """Create a charge. Never retried.

        Raises:
            GatewayRejected: 4xx (definitive), 5xx or an unusable 2xx body
                (outcome unknown).
            GatewayTimeout: Read/write timeout; outcome unknown.
            GatewayUnavailable: Nothing reached the gateway.
        """
        payload = build_payment_payload(charge)
        state = self._before_call()
        headers = self._headers({"X-Idempotency-Key": idempotency_key, "X-Circuit-State": state})
        url = f"{self.base_url}/v1/payments"

        try:
            with httpx.Client(timeout=self.submit_timeout) as client:
                try:
                    resp = client.post(url, json=payload, headers=headers)
                except NOT_SENT_ERRORS as e:
                    self.breaker.on_failure()
                    raise GatewayUnavailable(f"gateway unreachable: {e.__class__.__name__}") from e
                except httpx.RequestError as e:
                    # read/write timeouts and broken connections after the request left
                    self.breaker.on_failure()
                    raise GatewayTimeout(f"no answer from gateway: {e.__class__.__name__}") from e

                if 200 <= resp.status_code < 300:
                    self.breaker.on_success()
                    try:
                        return parse_payment(resp.json())
                    except ValueError as e:
                        raise GatewayRejected(resp.status_code, "malformed gateway response") from e
                if resp.status_code < 500:
                    self.breaker.on_success()  # business outcome, not a circuit failure
                    raise GatewayRejected(resp.status_code, _error_message(resp))
                self.breaker.on_failure()
                raise GatewayRejected(resp.status_code, _error_message(resp))
        finally:
            self.breaker.on_finish()

    def _get_json(self, path: str, params: Optional[dict] = None):
        """GET with retries on 5xx and unsent requests; returns the JSON body."""
        max_attempts, backoff = _retry_policy()
        state = self._before_call()
        headers = self._headers({"X-Circuit-State": state, "X-Retry-Count": "0"})
        url = f"{self.base_url}{path}"
        tries = 0

        try:
            with httpx.Client(timeout=self.status_timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.get(url, params=params, headers=headers)
                        if resp.status_code < 500:
                            self.breaker.on_success()
                            if resp.status_code >= 300:
                                raise GatewayRejected(resp.status_code, _error_message(resp))
                            try:
                                return resp.json()
                            except ValueError as e:
                                raise GatewayRejected(resp.status_code, "malformed gateway response") from e
                    except NOT_SENT_ERRORS as e:
                        exc = e
                    except httpx.RequestError as e:
                        self.breaker.on_failure()
                        raise GatewayTimeout(f"no answer from gateway: {e.__class__.__name__}") from e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_attempts or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        logger.warning(
                            "gateway read failed",
                            extra={"path": path, "attempts": tries, "gateway_status": getattr(resp, "status_code", None)},
                        )
                        if exc is not None:
                            raise GatewayUnavailable(f"gateway unreachable: {exc.__class__.__name__}") from exc
                        raise GatewayRejected(resp.status_code, _error_message(resp))

                    sleep_s = backoff * (2 ** (tries - 1))
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    if sleep_s > 0:
                        time.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()

    def get_payment(self, transaction_id: str) -> GatewayPayment:
        if not PAYMENT_ID_RE.fullmatch(str(transaction_id or "")):
            raise GatewayRejected(400, "invalid payment id")
        data = self._get_json(f"/v1/payments/{transaction_id}")
        try:
            return parse_payment(data)
        except ValueError as e:
            raise GatewayRejected(200, "malformed gateway response") from e

    def find_by_external_reference(self, external_reference: str) -> Optional[GatewayPayment]:
        data = self._get_json(
            "/v1/payments/search",
            params={"external_reference": external_reference, "sort": "date_created", "criteria": "desc"},
        )
        if not isinstance(data, dict):
            raise GatewayRejected(200, "malformed gateway response")
        for item in data.get("results") or []:
            try:
                return parse_payment(item)
            except ValueError:
                continue
        return None
