"""
Retry a failed invoice.

Usage:
    python manage.py retry_invoice <invoice_id> --user jdoe
    python manage.py retry_invoice <invoice_id> --user jdoe --async
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError, CommandParser

from apps.fiscal.exceptions import FiscalError
from apps.fiscal.registry import get_registry
from apps.fiscal.tasks import queue_invoice_retry


class Command(BaseCommand):
    help = "Resubmit a failed invoice to AFIP and record the attempt"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument("invoice_id", type=str)
        parser.add_argument("--user", type=str, required=True, help="Who requested the retry")
        parser.add_argument("--async", dest="run_async", action="store_true", help="Queue on the Django-Q cluster")

    def handle(self, *args: Any, **options: Any) -> None:
        invoice_id = options["invoice_id"]
        user_id = options["user"]

        if options["run_async"]:
            task_id = queue_invoice_retry(invoice_id, user_id)
            self.stdout.write(f"Queued retry of {invoice_id} as task {task_id}")
            return

        try:
            attempt = get_registry().retries.retry(invoice_id, user_id)
        except FiscalError as e:
            raise CommandError(f"{e.kind}: {e}") from e

        if attempt.succeeded:
            invoice = attempt.invoice
            self.stdout.write(
                self.style.SUCCESS(f"✅ Invoice {invoice.formatted_number} authorized, CAE {attempt.cae}")
            )
        else:
            raise CommandError(f"Retry failed: {attempt.error}")
