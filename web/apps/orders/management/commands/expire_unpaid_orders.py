"""Cancel prepaid orders whose payment did not complete in time.

Run from cron (or any external scheduler)::

    python manage.py expire_unpaid_orders --minutes 15
"""

from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand

from apps.orders import providers


class Command(BaseCommand):
    help = "Cancel pending orders left unpaid past the reservation timeout and release their stock."

    def add_arguments(self, parser):
        parser.add_argument(
            "--minutes",
            type=int,
            default=None,
            help="Reservation timeout in minutes (defaults to RESERVATION_TIMEOUT_MINUTES).",
        )

    def handle(self, *args, **options):
        minutes = options["minutes"]
        if minutes is None:
            minutes = settings.RESERVATION_TIMEOUT_MINUTES
        service = providers.get_order_service()
        expired = service.expire_unpaid_orders(timedelta(minutes=minutes))
        for order in expired:
            self.stdout.write(f"cancelled {order.order_number}")
        self.stdout.write(self.style.SUCCESS(f"{len(expired)} unpaid order(s) expired"))
