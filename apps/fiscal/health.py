"""
Operational health of the AFIP integration.

Checks, each reported independently:
- WSFEv1 infrastructure status (FEDummy)
- certificate validity and days to expiry
- stored WSAA tokens
- last authorized number per active point of sale (optional, needs a token)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from .exceptions import CertificateError, FiscalError
from .settings import VoucherType, fiscal_settings

if TYPE_CHECKING:
    from .client import SoapProtocolClient
    from .repository import FiscalRepository
    from .signer import CertificateSigner
    from .token_storage import AuthTokenManager

logger = logging.getLogger(__name__)

CERTIFICATE_WARNING_DAYS = 30


class FiscalHealthCheck:
    def __init__(
        self,
        repository: FiscalRepository,
        tokens: AuthTokenManager,
        client: SoapProtocolClient,
        signers: Callable[[], dict[str, CertificateSigner | CertificateError]],
    ) -> None:
        self._repository = repository
        self._tokens = tokens
        self._client = client
        self._signers = signers

    def check_server(self) -> dict[str, Any]:
        try:
            status = self._client.get_server_status()
        except FiscalError as e:
            logger.warning(f"⚠️ [Health] FEDummy failed: {e}")
            return {"ok": False, "error": f"{e.kind}: {e}"}
        return {
            "ok": status.is_ok,
            "app_server": status.app_server,
            "db_server": status.db_server,
            "auth_server": status.auth_server,
        }

    def check_certificates(self) -> dict[str, Any]:
        now = timezone.now()
        entries = []
        for tax_id, signer in sorted(self._signers().items()):
            if isinstance(signer, CertificateError):
                entries.append({"tax_id": tax_id, "ok": False, "error": str(signer)})
                continue
            days_left = (signer.not_valid_after - now) // timedelta(days=1)
            entries.append(
                {
                    "tax_id": tax_id,
                    "ok": days_left >= 0,
                    "subject": signer.subject,
                    "not_valid_after": signer.not_valid_after.isoformat(),
                    "days_left": days_left,
                    "expiring_soon": 0 <= days_left < CERTIFICATE_WARNING_DAYS,
                }
            )
        return {
            "ok": bool(entries) and all(e["ok"] for e in entries),
            "certificates": entries,
        }

    def check_last_numbers(self) -> dict[str, Any]:
        entries = []
        for config in self._repository.list_active_tax_configurations():
            entry: dict[str, Any] = {
                "branch_id": config.branch_id,
                "tax_id": config.tax_id,
                "point_of_sale": config.point_of_sale,
            }
            try:
                token = self._tokens.get_valid_token(config.tax_id)
                for voucher_type in VoucherType:
                    entry[voucher_type.value] = self._client.get_last_invoice_number(
                        token, config.point_of_sale, voucher_type
                    )
                entry["ok"] = True
            except FiscalError as e:
                entry["ok"] = False
                entry["error"] = f"{e.kind}: {e}"
            entries.append(entry)
        return {"ok": all(e["ok"] for e in entries), "points_of_sale": entries}

    def run(self, include_numbers: bool = False) -> dict[str, Any]:
        """Full report; ``healthy`` is the AND of every check that ran."""
        report: dict[str, Any] = {
            "environment": fiscal_settings.environment.value,
            "checked_at": timezone.now().isoformat(),
            "server": self.check_server(),
            "certificates": self.check_certificates(),
            "tokens": self._tokens.token_status(),
        }
        checks = [report["server"]["ok"], report["certificates"]["ok"]]
        if include_numbers:
            report["last_numbers"] = self.check_last_numbers()
            checks.append(report["last_numbers"]["ok"])
        report["healthy"] = all(checks)

        if report["healthy"]:
            logger.info("✅ [Health] AFIP integration healthy")
        else:
            logger.warning("⚠️ [Health] AFIP integration degraded")
        return report
