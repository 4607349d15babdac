import time
from django.apps import apps
from django.core.management.base import BaseCommand
from django.utils import timezone
from payments.models import Payment, PaymentStatus
from payments.services import PaymentError, settle_pending

class Command(BaseCommand):
    help = "Retry settlement for created payments whose verified gateway payment id is already on file"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        gateway = apps.get_app_config("payments").gateway
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Payment.objects.select_related("order")
            .filter(status=PaymentStatus.CREATED, gateway_payment_id__isnull=False, updated_at__lt=cutoff)
            .exclude(gateway_payment_id="")
            .order_by("updated_at")[:opts["max"]]
        )

        if not qs.exists():
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        settled = 0
        for p in qs:
            try:
                result = settle_pending(gateway, p)
                if result.ok:
                    settled += 1
                    p.refresh_from_db()
                    self.stdout.write(self.style.SUCCESS(f"{p.gateway_order_id} -> {p.status} ({result.status})"))
                else:
                    self.stdout.write(self.style.WARNING(f"{p.gateway_order_id}: {result.error}"))
            except PaymentError as e:
                self.stdout.write(self.style.WARNING(f"{p.gateway_order_id}: {e.kind} {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Settled {settled} payments."))
