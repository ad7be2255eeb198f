"""HTTP views for checkout, gateway webhooks and order reads.

Views are kept small: they validate requests (via Pydantic), delegate to the
submission service or the reconciler obtained from ``providers``, and turn
the typed ``CheckoutError`` hierarchy into JSON error bodies. No checkout
error crosses this boundary as a 5xx stack trace.

Idempotency: the checkout endpoint requires an ``Idempotency-Key`` header
(or ``idempotency_key`` body field). Definitive outcomes (201, 400, 402) are
stored and replayed with ``Idempotent-Replay: true``; reusing the key with a
different body returns 409. Outcomes that may still change (gateway timeout,
5xx, unavailable) are not stored, so a retry with the same key runs again
and the gateway deduplicates the charge on the same key.
"""

import logging

from django.core.paginator import Paginator
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .errors import (
    CheckoutError,
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    IdempotencyConflict,
    MissingCredentials,
    NoGateway,
    OrderNotFound,
    ValidationError,
)
from .idempotency import finalize, get_or_create_idempotent, is_finalized
from .models import OrderModel
from .providers import get_reconciler, get_submission_service
from .repository import OrderRepository
from .schemas import (
    KEY_MAX_LENGTH,
    OrderItemReadDTO,
    OrderReadDTO,
    PaymentReadDTO,
    SubmitCheckoutDTO,
    WebhookEventDTO,
)

logger = logging.getLogger(__name__)

# responses that will not change on retry with the same key
REPLAYABLE_STATUSES = {status.HTTP_201_CREATED, status.HTTP_400_BAD_REQUEST, status.HTTP_402_PAYMENT_REQUIRED}


def error_status(exc: CheckoutError) -> int:
    """HTTP status for a checkout error."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, IdempotencyConflict):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, OrderNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, GatewayRejected):
        if 400 <= exc.status_code < 500:
            return status.HTTP_402_PAYMENT_REQUIRED
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, GatewayTimeout):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, (GatewayUnavailable, NoGateway, MissingCredentials)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def poll_error_status(exc: CheckoutError) -> int:
    """HTTP status for a failed status re-check.

    A gateway refusal while reading says nothing about the charge itself, so
    it is reported as a bad gateway rather than a declined payment.
    """
    if isinstance(exc, GatewayRejected):
        return status.HTTP_502_BAD_GATEWAY
    return error_status(exc)


def error_response(exc: CheckoutError) -> Response:
    return Response(exc.to_body(), status=error_status(exc))


def pydantic_error_response(exc: PydanticValidationError) -> Response:
    errors = [{"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in exc.errors()]
    return Response(
        {"detail": ValidationError.code, "message": "invalid request", "errors": errors},
        status=status.HTTP_400_BAD_REQUEST,
    )


def order_to_dto(o: OrderModel, detail: bool = False) -> OrderReadDTO:
    payment = o.latest_payment()
    data = {
        "id": str(o.id),
        "internal_id": o.internal_id,
        "external_reference": o.external_reference,
        "status": o.status,
        "payment_method": o.payment_method,
        "currency": o.currency,
        "subtotal_amount": str(o.subtotal_amount),
        "bump_amount": str(o.bump_amount),
        "discount_amount": str(o.discount_amount),
        "total_amount": str(o.total_amount),
        "coupon_code": o.coupon_code or None,
        "customer_email": o.customer_email or None,
        "transaction_id": payment.transaction_id if payment else None,
        "status_checked_at": o.status_checked_at,
        "created_at": o.created_at,
    }
    if detail:
        data["items"] = [
            OrderItemReadDTO(product_id=i.product_id, name=i.name, unit_price=str(i.unit_price), role=i.role)
            for i in o.items.all()
        ]
        data["payments"] = [
            PaymentReadDTO(
                id=str(p.id),
                seq=p.seq,
                transaction_id=p.transaction_id,
                raw_status=p.raw_status,
                status=p.status,
                created_at=p.created_at,
            )
            for p in o.payments.order_by("-seq", "-created_at")
        ]
    return OrderReadDTO.model_validate(data)


class OrdersPingView(APIView):
    """Liveness probe for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class CheckoutSubmitView(APIView):
    """Submit a checkout and charge it at the gateway."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout_submit"

    def post(self, request):
        """Create (or replay) a checkout submission.

        Returns:
            Response: One of the following responses.
            - 201 with {order_id, external_reference, status, transaction_id,
              environment, total, redirect}.
            - 200/201/400/402 replayed with ``Idempotent-Replay: true``.
            - 400 ``VALIDATION_ERROR``; 409 ``IDEMPOTENCY_CONFLICT``.
            - 402 ``GATEWAY_REJECTED`` (gateway 4xx, definitive) or 502
              (gateway 5xx / unusable answer, may have succeeded).
            - 504 ``GATEWAY_TIMEOUT``; 503 ``GATEWAY_UNAVAILABLE``,
              ``NO_GATEWAY`` or ``MISSING_CREDENTIALS``.
        """
        # 1) Pydantic validation
        try:
            dto = SubmitCheckoutDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return pydantic_error_response(e)

        key = request.headers.get("Idempotency-Key") or dto.idempotency_key
        if not key:
            return error_response(ValidationError("idempotency key is required", field="idempotency_key"))
        if len(key) > KEY_MAX_LENGTH:
            return error_response(
                ValidationError(f"idempotency key longer than {KEY_MAX_LENGTH} characters", field="idempotency_key")
            )

        # 2) Idempotency get-or-create
        try:
            existing, rec = get_or_create_idempotent(key, dto.model_dump(mode="json", exclude={"idempotency_key"}))
        except IdempotencyConflict as e:
            return error_response(e)
        if existing and is_finalized(rec):
            resp = Response(rec.response_body, status=rec.response_status)
            resp["Idempotent-Replay"] = "true"
            return resp

        # 3) Submission
        try:
            result = get_submission_service().submit(dto, key)
        except CheckoutError as e:
            code = error_status(e)
            body = e.to_body()
            if code in REPLAYABLE_STATUSES:
                finalize(rec, code, body, order_id=getattr(e, "order_id", None))
            return Response(body, status=code)

        body = result.to_body()
        finalize(rec, status.HTTP_201_CREATED, body, order_id=result.order_id)
        return Response(body, status=status.HTTP_201_CREATED)


class MercadoPagoWebhookView(APIView):
    """Gateway notifications. Always 200 unless the body cannot be parsed."""

    def post(self, request):
        data = request.data
        if not isinstance(data, dict):
            return Response({"detail": "INVALID_PAYLOAD"}, status=status.HTTP_400_BAD_REQUEST)

        qp = request.query_params
        if not data.get("type") and not data.get("topic") and (qp.get("type") or qp.get("topic")):
            # feed-style notification: everything is in the query string
            data = {
                "type": qp.get("type"),
                "topic": qp.get("topic"),
                "id": qp.get("id"),
                "data": {"id": qp.get("data.id")} if qp.get("data.id") else None,
            }

        try:
            event = WebhookEventDTO.model_validate(dict(data))
        except PydanticValidationError:
            return Response({"detail": "INVALID_PAYLOAD"}, status=status.HTTP_400_BAD_REQUEST)

        ack = get_reconciler().handle_notification(
            event,
            signature=request.headers.get("x-signature"),
            request_id=request.headers.get("x-request-id"),
        )
        return Response(ack.to_body(), status=status.HTTP_200_OK)


class OrderStatusView(APIView):
    """Re-check an order against the gateway (status poller)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_status"

    def get(self, request, oid: str):
        try:
            result = get_reconciler().poll(oid)
        except CheckoutError as e:
            return Response(e.to_body(), status=poll_error_status(e))
        return Response(result.to_body(), status=status.HTTP_200_OK)


class OrdersCollectionView(APIView):
    """Paginated order list for the admin dashboard."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        qs = OrderModel.objects.order_by("-created_at")
        if request.GET.get("status"):
            qs = qs.filter(status=request.GET["status"])
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return error_response(ValidationError("page and page_size must be integers"))
        p = Paginator(qs, max(page_size, 1))
        page_obj = p.get_page(page)

        results = [order_to_dto(o).model_dump(mode="json", exclude_none=True) for o in page_obj.object_list]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid: str):
        try:
            o = OrderRepository().get(oid)
        except OrderNotFound as e:
            return error_response(e)
        dto = order_to_dto(o, detail=True)
        return Response(dto.model_dump(mode="json", exclude_none=True), status=200)
