"""Edge middleware: request correlation and API payload limits.

Every incoming HTTP request receives a request identifier. The identifier is
read from the incoming ``X-Request-Id`` header when the caller supplies one
(the payment gateway sends its own on webhook deliveries, and that same value
takes part in the webhook signature manifest) or generated server-side
otherwise. The id is stored on the ``request`` object and in a context
variable so outbound gateway calls and log records can pick it up without
passing it around explicitly.

Behavior contract:
- If the incoming request contains ``X-Request-Id``, that value is reused.
- Otherwise a new UUIDv4 is generated.
- The response carries the same id in ``X-Request-ID``.
- The context variable is reset once the response is produced so a worker
  thread never leaks one request's id into the next.
"""

import logging
import time
import uuid
import contextvars

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("edge.access")


class RequestIdMiddleware(MiddlewareMixin):
    """Assign a per-request identifier and log one access line per request.

    Attributes:
        HEADER (str): Incoming header name in ``request.META`` casing.
        RESPONSE_HEADER (str): Header name set on outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Attach ``request.request_id`` and bind it to ``REQUEST_ID_CTX``.

        Args:
            request: Django HttpRequest instance.
        """
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)
        request._started_at = time.monotonic()

    def process_response(self, request, response):
        """Echo the request id, emit the access log line and reset the context.

        Args:
            request: Django HttpRequest (may lack our attributes when an
                earlier middleware short-circuited).
            response: Django HttpResponse to modify.

        Returns:
            The same response with ``X-Request-ID`` set.
        """
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid

        started = getattr(request, "_started_at", None)
        if started is not None:
            logger.info(
                "request handled",
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )

        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject oversized bodies on ``/api/`` before they reach a view."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", 1 * 1024 * 1024)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
