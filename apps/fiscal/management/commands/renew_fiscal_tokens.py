"""
Renew WSAA tokens from the command line.

Usage:
    python manage.py renew_fiscal_tokens
    python manage.py renew_fiscal_tokens --tax-id 20123456789 --force
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError, CommandParser

from apps.fiscal.exceptions import FiscalError
from apps.fiscal.registry import get_registry


class Command(BaseCommand):
    help = "Renew WSAA tokens close to expiry (or one tax id, unconditionally, with --force)"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument("--tax-id", type=str, help="Only this CUIT")
        parser.add_argument(
            "--force",
            action="store_true",
            help="Renew even if the current token is still valid (requires --tax-id)",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        registry = get_registry()
        tax_id = options.get("tax_id")

        if options["force"]:
            if not tax_id:
                raise CommandError("--force requires --tax-id")
            try:
                token = registry.tokens.renew(tax_id)
            except FiscalError as e:
                raise CommandError(f"{e.kind}: {e}") from e
            self.stdout.write(self.style.SUCCESS(f"✅ {tax_id}: new token valid until {token.expires_at.isoformat()}"))
            return

        summary = registry.renewal_job.run()
        for detail in summary.details:
            if tax_id and detail["tax_id"] != tax_id:
                continue
            line = f"{detail['tax_id']}: {detail['status']}"
            if detail["status"] == "failed":
                self.stdout.write(self.style.ERROR(f"{line} ({detail['error']})"))
            elif detail["status"] == "renewed":
                self.stdout.write(self.style.SUCCESS(f"{line} until {detail['expires_at']}"))
            else:
                self.stdout.write(f"{line} ({detail['minutes_remaining']} minutes left)")

        self.stdout.write(
            f"\nRenewed: {summary.renewed}  Unchanged: {summary.unchanged}  Failed: {summary.failed}"
        )
        if summary.failed:
            raise CommandError(f"{summary.failed} renewal(s) failed")
