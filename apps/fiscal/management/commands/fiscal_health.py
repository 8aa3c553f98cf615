"""
Report the health of the AFIP integration.

Usage:
    python manage.py fiscal_health
    python manage.py fiscal_health --numbers --json
"""

from __future__ import annotations

import json
from typing import Any

from django.core.management.base import BaseCommand, CommandError, CommandParser

from apps.fiscal.registry import get_registry


class Command(BaseCommand):
    help = "Check WSFEv1 status, certificates, WSAA tokens and (optionally) last authorized numbers"

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--numbers",
            action="store_true",
            help="Also query the last authorized number of every active point of sale",
        )
        parser.add_argument("--json", action="store_true", help="Print the raw report as JSON")

    def handle(self, *args: Any, **options: Any) -> None:
        report = get_registry().health.run(include_numbers=options["numbers"])

        if options["json"]:
            self.stdout.write(json.dumps(report, indent=2, default=str))
        else:
            self._print(report)

        if not report["healthy"]:
            raise CommandError("AFIP integration is degraded")

    def _print(self, report: dict[str, Any]) -> None:
        self.stdout.write(self.style.HTTP_INFO(f"\n{'=' * 60}\nAFIP health ({report['environment']})\n{'=' * 60}"))

        server = report["server"]
        if server["ok"]:
            self.stdout.write(self.style.SUCCESS("WSFEv1: OK"))
        else:
            detail = server.get("error") or (
                f"app={server['app_server']} db={server['db_server']} auth={server['auth_server']}"
            )
            self.stdout.write(self.style.ERROR(f"WSFEv1: {detail}"))

        for cert in report["certificates"]["certificates"]:
            if not cert["ok"]:
                self.stdout.write(self.style.ERROR(f"Certificate {cert['tax_id']}: {cert.get('error', 'expired')}"))
            elif cert["expiring_soon"]:
                self.stdout.write(self.style.WARNING(f"Certificate {cert['tax_id']}: {cert['days_left']} days left"))
            else:
                self.stdout.write(f"Certificate {cert['tax_id']}: valid until {cert['not_valid_after']}")
        if not report["certificates"]["certificates"]:
            self.stdout.write(self.style.ERROR("No certificates configured"))

        tokens = report["tokens"]
        self.stdout.write(f"Tokens: {tokens['valid']} valid, {tokens['expired']} expired")
        for token in tokens["tokens"]:
            self.stdout.write(f"  {token['tax_id']}: {token['minutes_remaining']} minutes left")

        for pos in report.get("last_numbers", {}).get("points_of_sale", []):
            if pos["ok"]:
                self.stdout.write(f"POS {pos['point_of_sale']} ({pos['tax_id']}): A={pos['A']} B={pos['B']}")
            else:
                self.stdout.write(self.style.ERROR(f"POS {pos['point_of_sale']} ({pos['tax_id']}): {pos['error']}"))
