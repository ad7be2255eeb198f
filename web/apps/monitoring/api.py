import logging

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.gateways.models import Gateway

logger = logging.getLogger(__name__)


def health_view(_request):
    """DB liveness plus whether an active gateway is configured.

    Only the database decides the status code; a missing gateway is reported
    so operators see why checkouts answer ``NO_GATEWAY``.
    """
    db_ok = False
    gateway_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
        gateway_ok = Gateway.objects.filter(provider=settings.GATEWAY_PROVIDER, is_active=True).exists()
    except DatabaseError:
        logger.exception("health check failed")

    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "gateway": {"ok": gateway_ok, "provider": settings.GATEWAY_PROVIDER},
            },
        },
        status=code,
    )
