"""
AFIP electronic invoicing settings.

Fixed protocol constants live at module level; everything an operator can
change is read from Django settings through ``FiscalSettings`` with the
defaults declared in ``DEFAULTS``.

Usage:
    from apps.fiscal.settings import fiscal_settings

    url = fiscal_settings.environment.wsfe_url
    vat_id = fiscal_settings.vat_id_for(Decimal("21"))
"""

from __future__ import annotations

import base64
import logging
from decimal import Decimal
from enum import StrEnum
from typing import Any

from django.conf import settings as django_settings

logger = logging.getLogger(__name__)


# ===============================================================================
# CONSTANTS - Fixed by AFIP, not configurable
# ===============================================================================

WSFE_NAMESPACE = "http://ar.gov.afip.dif.FEV1/"
WSAA_NAMESPACE = "http://wsaa.view.sua.dvadac.desein.afip.gov"
SOAP_ENV_NAMESPACE = "http://schemas.xmlsoap.org/soap/envelope/"

WSFE_SERVICE_NAME = "wsfe"
LOGIN_TICKET_VERSION = "1.0"

QR_BASE_URL = "https://www.afip.gob.ar/fe/qr/"
QR_VERSION = 1

CURRENCY_ID = "PES"
CURRENCY_RATE = 1
CONCEPT_GOODS = 1

DOC_TYPE_CUIT = 80
DOC_TYPE_FINAL_CONSUMER = 99

# Receiver VAT condition (RG 5616)
VAT_CONDITION_REGISTERED = 1
VAT_CONDITION_FINAL_CONSUMER = 5


class VoucherType(StrEnum):
    """Voucher letter issued for a sale."""

    A = "A"  # Buyer is a registered taxpayer (CUIT)
    B = "B"  # Final consumer

    @property
    def code(self) -> int:
        return VOUCHER_CODES[self.value]

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(v.value, f"Factura {v.value}") for v in cls]


VOUCHER_CODES: dict[str, int] = {
    "A": 1,
    "B": 6,
}

# VAT rate (percent) -> AFIP AlicIva Id
VAT_RATE_IDS: dict[Decimal, int] = {
    Decimal("0"): 3,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
    Decimal("5"): 8,
    Decimal("2.5"): 9,
}

DEFAULT_VAT_RATE = Decimal("21")


class FiscalEnvironment(StrEnum):
    """AFIP environments."""

    HOMOLOGATION = "homologation"
    PRODUCTION = "production"

    @property
    def wsaa_url(self) -> str:
        urls = {
            "homologation": "https://wsaahomo.afip.gob.ar/ws/services/LoginCms",
            "production": "https://wsaa.afip.gob.ar/ws/services/LoginCms",
        }
        return urls[self.value]

    @property
    def wsfe_url(self) -> str:
        urls = {
            "homologation": "https://wswhomo.afip.gob.ar/wsfev1/service.asmx",
            "production": "https://servicios1.afip.gob.ar/wsfev1/service.asmx",
        }
        return urls[self.value]


# ===============================================================================
# DEFAULTS - Overridable through Django settings
# ===============================================================================

DEFAULTS: dict[str, Any] = {
    "FISCAL_ENABLED": True,
    "FISCAL_ENVIRONMENT": FiscalEnvironment.HOMOLOGATION.value,
    "FISCAL_CERT_BASE64": "",
    "FISCAL_KEY_BASE64": "",
    "FISCAL_CERTIFICATES": {},
    "FISCAL_REQUEST_TIMEOUT_SECONDS": 10,
    "FISCAL_TOKEN_RENEWAL_MARGIN_HOURS": 6,
    "FISCAL_TOKEN_RENEWAL_INTERVAL_MINUTES": 60,
    "FISCAL_RENEWAL_PAUSE_SECONDS": 2,
    "FISCAL_SEND_LINE_ITEMS": False,
    "FISCAL_SALE_MODEL": "",
    "FISCAL_SALE_INVOICED_FIELD": "invoiced",
    "FISCAL_PROTOCOL_LOG_MAX_CHARS": 10000,
    "FISCAL_STALE_INVOICE_MINUTES": 30,
    "FISCAL_RETRY_BATCH_SIZE": 50,
    "FISCAL_METRICS_PREFIX": "fiscal",
}


class FiscalSettings:
    """
    Typed accessor over Django settings.

    Values are read on every access so ``override_settings`` in tests takes
    effect without rebuilding anything.
    """

    def _get(self, name: str) -> Any:
        return getattr(django_settings, name, DEFAULTS[name])

    @property
    def enabled(self) -> bool:
        return bool(self._get("FISCAL_ENABLED"))

    @property
    def environment(self) -> FiscalEnvironment:
        value = str(self._get("FISCAL_ENVIRONMENT")).lower()
        if value in ("prod", "production"):
            return FiscalEnvironment.PRODUCTION
        if value not in ("homologation", "homo", "test", "testing"):
            logger.warning(f"⚠️ [Fiscal] Unknown FISCAL_ENVIRONMENT '{value}', using homologation")
        return FiscalEnvironment.HOMOLOGATION

    @property
    def is_production(self) -> bool:
        return self.environment == FiscalEnvironment.PRODUCTION

    @property
    def request_timeout(self) -> int:
        return int(self._get("FISCAL_REQUEST_TIMEOUT_SECONDS"))

    @property
    def renewal_margin_hours(self) -> int:
        return int(self._get("FISCAL_TOKEN_RENEWAL_MARGIN_HOURS"))

    @property
    def renewal_interval_minutes(self) -> int:
        return int(self._get("FISCAL_TOKEN_RENEWAL_INTERVAL_MINUTES"))

    @property
    def renewal_pause_seconds(self) -> float:
        return float(self._get("FISCAL_RENEWAL_PAUSE_SECONDS"))

    @property
    def send_line_items(self) -> bool:
        return bool(self._get("FISCAL_SEND_LINE_ITEMS"))

    @property
    def sale_model(self) -> str:
        return str(self._get("FISCAL_SALE_MODEL") or "")

    @property
    def sale_invoiced_field(self) -> str:
        return str(self._get("FISCAL_SALE_INVOICED_FIELD"))

    @property
    def protocol_log_max_chars(self) -> int:
        return int(self._get("FISCAL_PROTOCOL_LOG_MAX_CHARS"))

    @property
    def stale_invoice_minutes(self) -> int:
        return int(self._get("FISCAL_STALE_INVOICE_MINUTES"))

    @property
    def retry_batch_size(self) -> int:
        return int(self._get("FISCAL_RETRY_BATCH_SIZE"))

    @property
    def metrics_prefix(self) -> str:
        return str(self._get("FISCAL_METRICS_PREFIX"))

    # --- Certificates ---

    @property
    def certificates(self) -> dict[str, tuple[str, str]]:
        """Per-CUIT (cert, key) base64 pairs from FISCAL_CERTIFICATES."""
        entries: dict[str, dict[str, str]] = self._get("FISCAL_CERTIFICATES") or {}
        return {tax_id: (entry.get("cert", ""), entry.get("key", "")) for tax_id, entry in entries.items()}

    @property
    def default_certificate(self) -> tuple[str, str]:
        """(cert, key) base64 pair used for tax ids without their own entry."""
        return self._get("FISCAL_CERT_BASE64") or "", self._get("FISCAL_KEY_BASE64") or ""

    # --- VAT ---

    @staticmethod
    def vat_id_for(rate: Decimal | int | str) -> int:
        """AFIP AlicIva id for a VAT percentage."""
        key = Decimal(str(rate)).normalize()
        for known_rate, vat_id in VAT_RATE_IDS.items():
            if known_rate.normalize() == key:
                return vat_id
        raise ValueError(f"Unsupported VAT rate: {rate}%")


def b64decode_strict(value: bytes | str) -> bytes:
    """Strict base64 decoding, tolerant of embedded whitespace."""
    if isinstance(value, str):
        value = value.encode()
    return base64.b64decode(b"".join(value.split()), validate=True)


fiscal_settings = FiscalSettings()
