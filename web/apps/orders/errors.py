"""Error taxonomy for checkout submission and reconciliation.

Each error carries a stable ``code`` the views map to an HTTP status and a
JSON body. The split matters to the public checkout: ``GatewayRejected``
with a 4xx means "definitely failed, retry with new details", while
``GatewayTimeout`` (and a rejected 5xx that recorded an ``order_id``) means
"may have succeeded, re-check the order status".
"""

from typing import Optional


class CheckoutError(Exception):
    """Base class for all typed checkout errors."""

    code = "CHECKOUT_ERROR"
    retryable = False

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_body(self) -> dict:
        body = {"detail": self.code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(CheckoutError):
    """Malformed cart, customer or payment fields; raised before any network call."""

    code = "VALIDATION_ERROR"


class NoGateway(CheckoutError):
    code = "NO_GATEWAY"


class MissingCredentials(CheckoutError):
    code = "MISSING_CREDENTIALS"


class GatewayError(CheckoutError):
    """Base for failures talking to the external gateway.

    ``order_id`` is set when a ``pending`` order was recorded because the
    gateway may have accepted the charge.
    """

    def __init__(self, message: str = "", order_id: Optional[str] = None, **details):
        super().__init__(message, order_id=order_id, **details)
        self.order_id = order_id


class GatewayRejected(GatewayError):
    """Gateway answered with a non-success HTTP status or an unusable body."""

    code = "GATEWAY_REJECTED"

    def __init__(self, status_code: int, message: str, order_id: Optional[str] = None):
        super().__init__(message, order_id=order_id, gateway_status=status_code)
        self.status_code = status_code


class GatewayTimeout(GatewayError):
    """The gateway did not answer within the configured timeout."""

    code = "GATEWAY_TIMEOUT"
    retryable = True


class GatewayUnavailable(GatewayError):
    """The request never reached the gateway (connection refused, open circuit)."""

    code = "GATEWAY_UNAVAILABLE"
    retryable = True


class OrderNotFound(CheckoutError):
    code = "NOT_FOUND"


class ReconciliationAnomaly(CheckoutError):
    """A disallowed terminal-to-terminal transition.

    Recorded and logged by the reconciler; never raised across the API.
    """

    code = "RECONCILIATION_ANOMALY"


class IdempotencyConflict(CheckoutError):
    """The idempotency key was already used with a different request body."""

    code = "IDEMPOTENCY_CONFLICT"
