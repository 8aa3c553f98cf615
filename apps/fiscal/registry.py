"""
Wiring of the fiscal services.

One ``FiscalRegistry`` is built when the app loads and kept on the app
config. Certificates are decoded right away: a broken certificate is logged
at startup and reported again on every use of that tax id.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.apps import apps

from .client import SoapProtocolClient
from .contingency import ContingencyService
from .exceptions import CertificateError
from .health import FiscalHealthCheck
from .repository import DjangoFiscalRepository
from .retry import RetryCoordinator
from .service import InvoiceIssuer
from .settings import fiscal_settings
from .signer import CertificateSigner
from .tasks import TokenRenewalJob
from .token_storage import AuthTokenManager

if TYPE_CHECKING:
    from .repository import FiscalRepository

logger = logging.getLogger(__name__)


class FiscalRegistry:
    """Holds one instance of every fiscal service, sharing repository, client and tokens."""

    def __init__(
        self,
        repository: FiscalRepository | None = None,
        client: SoapProtocolClient | None = None,
    ) -> None:
        self.repository: FiscalRepository = repository or DjangoFiscalRepository()
        self.client = client or SoapProtocolClient()

        self._signers: dict[str, CertificateSigner] = {}
        self._signer_errors: dict[str, CertificateError] = {}
        self._default_signer: CertificateSigner | None = None
        self._default_error: CertificateError | None = None
        self._load_signers()

        self.tokens = AuthTokenManager(self.repository, self.client, self.signer_for)
        self.contingencies = ContingencyService(self.repository)
        self.issuer = InvoiceIssuer(self.repository, self.tokens, self.client, self.contingencies)
        self.retries = RetryCoordinator(self.repository, self.issuer, self.contingencies)
        self.renewal_job = TokenRenewalJob(self.repository, self.tokens, self.client)
        self.health = FiscalHealthCheck(self.repository, self.tokens, self.client, self.signers)

    def _load_signers(self) -> None:
        for tax_id, (cert_b64, key_b64) in fiscal_settings.certificates.items():
            try:
                self._signers[tax_id] = CertificateSigner(cert_b64, key_b64)
            except CertificateError as e:
                self._signer_errors[tax_id] = e
                logger.error(f"🔥 [Fiscal] Certificate for {tax_id} unusable: {e}")

        cert_b64, key_b64 = fiscal_settings.default_certificate
        if cert_b64 or key_b64:
            try:
                self._default_signer = CertificateSigner(cert_b64, key_b64)
            except CertificateError as e:
                self._default_error = e
                logger.error(f"🔥 [Fiscal] Default certificate unusable: {e}")

        logger.info(
            f"[Fiscal] Loaded {len(self._signers)} per-CUIT certificates"
            f"{' and a default certificate' if self._default_signer else ''} "
            f"({fiscal_settings.environment.value})"
        )

    def signer_for(self, tax_id: str) -> CertificateSigner:
        """
        Signer for ``tax_id``, falling back to the default certificate.

        Raises:
            CertificateError: the certificate for this tax id is broken, or none is configured
        """
        if tax_id in self._signers:
            return self._signers[tax_id]
        if tax_id in self._signer_errors:
            err = self._signer_errors[tax_id]
            raise CertificateError(str(err)) from err
        if self._default_signer is not None:
            return self._default_signer
        if self._default_error is not None:
            raise CertificateError(str(self._default_error)) from self._default_error
        raise CertificateError(f"No certificate configured for {tax_id}")

    def signers(self) -> dict[str, CertificateSigner | CertificateError]:
        """Every configured certificate by tax id ('default' for the shared one)."""
        entries: dict[str, CertificateSigner | CertificateError] = {}
        entries.update(self._signers)
        entries.update(self._signer_errors)
        if self._default_signer is not None:
            entries["default"] = self._default_signer
        elif self._default_error is not None:
            entries["default"] = self._default_error
        return entries


def get_registry() -> FiscalRegistry:
    """The registry built by ``FiscalConfig.ready()``."""
    return apps.get_app_config("fiscal").registry  # type: ignore[attr-defined,no-any-return]
