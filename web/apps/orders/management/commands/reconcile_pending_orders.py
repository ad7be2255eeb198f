import logging

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db.models import Q
from django.utils import timezone

from apps.orders.errors import CheckoutError
from apps.orders.models import OrderModel, Status
from apps.orders.providers import get_reconciler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Poll the gateway for pending orders whose webhook may have been missed"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=100, help="Max orders to process")
        parser.add_argument(
            "--older-than-minutes",
            type=int,
            default=None,
            help="Only orders created (and last checked) more than N minutes ago",
        )
        parser.add_argument("--order-id", default=None, help="Reconcile a single order")

    def handle(self, *args, **opts):
        reconciler = get_reconciler()

        if opts["order_id"]:
            ids = [opts["order_id"]]
        else:
            minutes = opts["older_than_minutes"]
            if minutes is None:
                minutes = settings.CHECKOUT_STALE_PENDING_MINUTES
            cutoff = timezone.now() - timezone.timedelta(minutes=minutes)
            qs = (
                OrderModel.objects.filter(status=Status.PENDING, created_at__lt=cutoff)
                .filter(Q(status_checked_at__isnull=True) | Q(status_checked_at__lt=cutoff))
                .order_by("created_at")
            )
            ids = list(qs.values_list("id", flat=True)[: opts["max"]])

        if not ids:
            self.stdout.write(self.style.SUCCESS("No pending orders to reconcile."))
            return

        changed = 0
        failed = 0
        for oid in ids:
            try:
                result = reconciler.poll(oid)
            except CheckoutError as e:
                failed += 1
                logger.warning("reconcile failed", extra={"order_id": str(oid), "code": e.code})
                self.stdout.write(self.style.WARNING(f"{oid}: {e.code} {e.message}"))
                continue
            if result.changed:
                changed += 1
                self.stdout.write(self.style.SUCCESS(f"Updated {oid} -> {result.status.value}"))
            else:
                self.stdout.write(f"{oid}: {result.status.value} ({result.outcome})")

        self.stdout.write(self.style.SUCCESS(f"Checked {len(ids)}, updated {changed}, failed {failed}."))
