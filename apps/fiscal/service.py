"""
Invoice issuance.

This service turns a completed sale into an authorized electronic voucher:
- resolves the branch's tax configuration
- creates the invoice (one open invoice per sale)
- obtains a WSAA token and requests the CAE
- looks up an unconfirmed number before resubmitting it
- persists the outcome, QR and protocol log
- raises a contingency when anything fails

Usage:
    from apps.fiscal.registry import get_registry

    result = get_registry().issuer.issue(sale)
"""

from __future__ import annotations

import logging
import re
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from .amounts import TaxBreakdown, deserialize_items, line_items_payload, round_money, serialize_items, split_gross
from .client import ApprovedAuthorization, InvoicePayload, RejectedAuthorization
from .exceptions import (
    RETRYABLE_ERROR_KINDS,
    AlreadyIssuedError,
    AuthorityRejectionError,
    FiscalError,
    TaxConfigurationError,
    UnconfirmedAuthorizationError,
)
from .locks import KeyedLock
from .metrics import metrics
from .models import Invoice, InvoiceStatus
from .protocol_log import ProtocolLog
from .qr import generate_qr
from .settings import (
    DOC_TYPE_CUIT,
    DOC_TYPE_FINAL_CONSUMER,
    VAT_CONDITION_FINAL_CONSUMER,
    VAT_CONDITION_REGISTERED,
    VoucherType,
)

if TYPE_CHECKING:
    from .client import SoapProtocolClient
    from .contingency import ContingencyService
    from .repository import FiscalRepository
    from .token_storage import AuthTokenManager
    from .types import AuthToken, Sale

logger = logging.getLogger(__name__)


@dataclass
class IssueResult:
    """Outcome of an issuance or submission attempt."""

    success: bool
    invoice: Invoice | None = None
    created: bool = False
    error_message: str = ""
    error_kind: str = ""
    errors: list[dict[str, Any]] = field(default_factory=list)
    protocol_log: str = ""

    @classmethod
    def ok(cls, invoice: Invoice, created: bool = False, protocol_log: str = "") -> IssueResult:
        return cls(success=True, invoice=invoice, created=created, protocol_log=protocol_log)

    @classmethod
    def existing(cls, invoice: Invoice) -> IssueResult:
        return cls(
            success=invoice.is_completed,
            invoice=invoice,
            created=False,
            error_message=invoice.error,
            error_kind=invoice.error_kind,
        )

    @classmethod
    def error(
        cls,
        invoice: Invoice,
        message: str,
        kind: str,
        errors: list[dict[str, Any]] | None = None,
        protocol_log: str = "",
    ) -> IssueResult:
        return cls(
            success=False,
            invoice=invoice,
            error_message=message,
            error_kind=kind,
            errors=errors or [],
            protocol_log=protocol_log,
        )


def normalize_tax_id(value: str | None) -> str:
    """CUIT digits only ('20-12345678-9' -> '20123456789')."""
    return re.sub(r"\D", "", value or "")


class InvoiceIssuer:
    """
    Sale → invoice state machine.

    States: pending → processing → completed | error. ``issue`` handles a new
    sale; ``submit`` runs one authorization attempt and is reused by retries.
    """

    def __init__(
        self,
        repository: FiscalRepository,
        tokens: AuthTokenManager,
        client: SoapProtocolClient,
        contingencies: ContingencyService,
    ) -> None:
        self._repository = repository
        self._tokens = tokens
        self._client = client
        self._contingencies = contingencies
        self._sale_locks = KeyedLock()

    def sale_lock(self, sale_id: str) -> AbstractContextManager[None]:
        """Per-sale lock shared with the retry coordinator."""
        return self._sale_locks.hold(sale_id)

    # --- Main Workflow Methods ---

    def issue(self, sale: Sale) -> IssueResult:
        """
        Issue the voucher for a completed sale.

        A sale that already has an invoice gets it back without a new
        submission. That includes a failed one: resubmitting goes through
        ``RetryCoordinator``, which checks for an earlier authorization first.

        Raises:
            TaxConfigurationError: the branch has no active configuration, or more than one
        """
        with self._sale_locks.hold(sale.sale_id):
            existing = self._repository.find_open_invoice(sale.sale_id)
            if existing is None:
                existing = self._repository.find_latest_invoice(sale.sale_id)
            if existing is not None:
                if existing.status == InvoiceStatus.ERROR.value:
                    logger.warning(
                        f"⚠️ [Fiscal] Sale {sale.sale_id} already has failed invoice {existing.pk}, "
                        f"not resubmitting outside a retry"
                    )
                else:
                    logger.info(f"[Fiscal] Sale {sale.sale_id} already has invoice {existing.pk} [{existing.status}]")
                return IssueResult.existing(existing)

            config = self._repository.find_active_tax_configuration(sale.branch_id)
            if config is None:
                raise TaxConfigurationError(f"Branch {sale.branch_id} has no active tax configuration")

            buyer_tax_id = normalize_tax_id(sale.buyer_tax_id)
            voucher_type = VoucherType.A if buyer_tax_id else VoucherType.B

            try:
                invoice = self._repository.create_invoice(
                    sale_id=sale.sale_id,
                    branch_id=sale.branch_id,
                    tax_id=config.tax_id,
                    voucher_type=voucher_type.value,
                    point_of_sale=config.point_of_sale,
                    issue_date=timezone.localdate(),
                    total=round_money(sale.total),
                    vat_rate=config.vat_rate,
                    buyer_tax_id=buyer_tax_id,
                    line_items=serialize_items(sale.items),
                    status=InvoiceStatus.PENDING.value,
                )
            except AlreadyIssuedError:
                # Another process won the race
                existing = self._repository.find_open_invoice(sale.sale_id)
                if existing is None:
                    raise
                return IssueResult.existing(existing)

            logger.info(
                f"🧾 [Fiscal] Created Factura {voucher_type.value} for sale {sale.sale_id} "
                f"(CUIT {config.tax_id}, POS {config.point_of_sale}, total {invoice.total})"
            )
            result = self.submit(invoice)
            result.created = True
            return result

    def submit(self, invoice: Invoice) -> IssueResult:
        """
        Run one authorization attempt for ``invoice``.

        Never raises for authority or transport problems: the failure is
        persisted on the invoice, a contingency is raised, and a failed result
        is returned. Illegal transitions (e.g. a completed invoice) do raise.
        """
        log = ProtocolLog()
        log.add(f"Submitting invoice {invoice.pk} for sale {invoice.sale_id} (previous status {invoice.status})")
        self._repository.update_invoice_status(invoice, InvoiceStatus.PROCESSING.value, error="", error_kind="")

        breakdown: TaxBreakdown | None = None
        try:
            breakdown = split_gross(invoice.total, invoice.vat_rate)
            payload = self._build_payload(invoice, breakdown)
            log.add(f"Payload: {payload.describe()}")
            for line in payload.line_items:
                log.add(f"  item {line.to_dict()}")

            token = self._tokens.get_valid_token(invoice.tax_id, log)
            response = self._recorded_authorization(invoice, token, breakdown, log)
            if response is None:
                response = self._client.request_invoice_authorization(token, payload, log)
        except Exception as e:
            return self._fail(invoice, e, log, breakdown)

        if isinstance(response, RejectedAuthorization):
            rejection = AuthorityRejectionError(response.message, errors=response.errors + response.observations)
            return self._fail(invoice, rejection, log, breakdown, raw=response.raw)

        log.add(f"Approved: number {response.invoice_number}, CAE {response.cae}, due {response.cae_due_date}")
        self._repository.update_invoice_status(
            invoice,
            InvoiceStatus.COMPLETED.value,
            invoice_number=response.invoice_number,
            pending_number=0,
            cae=response.cae,
            cae_due_date=response.cae_due_date,
            authority_response=response.raw,
            net_amount=breakdown.net_amount,
            tax_amount=breakdown.tax_amount,
            protocol_log=log.render(),
        )
        metrics.record_issuance("completed", invoice.voucher_type)
        logger.info(
            f"✅ [Fiscal] Invoice {invoice.formatted_number} authorized for sale {invoice.sale_id}, CAE {invoice.cae}"
        )

        self._attach_qr(invoice)
        self._mark_sale_invoiced(invoice)
        return IssueResult.ok(invoice, protocol_log=invoice.protocol_log)

    # --- Helpers ---

    def _build_payload(self, invoice: Invoice, breakdown: TaxBreakdown) -> InvoicePayload:
        buyer = invoice.buyer_tax_id
        return InvoicePayload(
            point_of_sale=invoice.point_of_sale,
            voucher_type=VoucherType(invoice.voucher_type),
            issue_date=invoice.issue_date,
            doc_type=DOC_TYPE_CUIT if buyer else DOC_TYPE_FINAL_CONSUMER,
            doc_number=int(buyer) if buyer else 0,
            buyer_vat_condition=VAT_CONDITION_REGISTERED if buyer else VAT_CONDITION_FINAL_CONSUMER,
            total=breakdown.total,
            net_amount=breakdown.net_amount,
            tax_amount=breakdown.tax_amount,
            vat_id=breakdown.vat_id,
            line_items=line_items_payload(deserialize_items(invoice.line_items), breakdown.vat_rate),
        )

    def _recorded_authorization(
        self,
        invoice: Invoice,
        token: AuthToken,
        breakdown: TaxBreakdown,
        log: ProtocolLog,
    ) -> ApprovedAuthorization | None:
        """
        Settle an earlier unconfirmed submission before sending a new one.

        Returns the authorization AFIP already granted this invoice under
        ``pending_number``, or None once that number is known not to be ours.
        """
        number = invoice.pending_number
        if not number:
            return None

        log.add(f"Looking up number {number} from an unconfirmed submission")
        voucher = self._client.get_invoice(token, invoice.point_of_sale, invoice.voucher_code, number, log)
        doc_number = int(invoice.buyer_tax_id) if invoice.buyer_tax_id else 0
        if voucher is not None and voucher.total == breakdown.total and voucher.doc_number == doc_number:
            log.add(f"Number {number} is already authorized with CAE {voucher.cae}")
            logger.info(f"✅ [Fiscal] Invoice {invoice.pk} already authorized as number {number}, not resubmitting")
            return voucher.to_authorization()

        if voucher is not None:
            logger.warning(f"⚠️ [Fiscal] Number {number} belongs to another voucher, resubmitting {invoice.pk}")
        log.add(f"Number {number} was not authorized for this invoice, resubmitting")
        self._repository.update_invoice_status(invoice, InvoiceStatus.PROCESSING.value, pending_number=0)
        return None

    def _fail(
        self,
        invoice: Invoice,
        exc: Exception,
        log: ProtocolLog,
        breakdown: TaxBreakdown | None,
        raw: dict[str, Any] | None = None,
    ) -> IssueResult:
        kind = exc.kind if isinstance(exc, FiscalError) else type(exc).__name__
        message = str(exc) or kind
        log.error(f"{kind}: {message}")

        if isinstance(exc, FiscalError):
            logger.warning(f"⚠️ [Fiscal] Invoice {invoice.pk} for sale {invoice.sale_id} failed: {kind}: {message}")
        else:
            logger.exception(f"🔥 [Fiscal] Unexpected error issuing invoice {invoice.pk} for sale {invoice.sale_id}")

        fields: dict[str, Any] = {
            "error": message,
            "error_kind": kind,
            "protocol_log": log.render(),
            "next_retry_at": invoice.next_auto_retry_at() if kind in RETRYABLE_ERROR_KINDS else None,
        }
        if isinstance(exc, UnconfirmedAuthorizationError):
            fields["pending_number"] = exc.invoice_number
        if raw is not None:
            fields["authority_response"] = raw
        if breakdown is not None:
            fields["net_amount"] = breakdown.net_amount
            fields["tax_amount"] = breakdown.tax_amount

        self._repository.update_invoice_status(invoice, InvoiceStatus.ERROR.value, **fields)
        metrics.record_issuance("error", invoice.voucher_type)
        self._contingencies.raise_for_invoice(invoice, message, kind)

        errors = exc.errors if isinstance(exc, AuthorityRejectionError) else []
        return IssueResult.error(invoice, message, kind, errors=errors, protocol_log=invoice.protocol_log)

    def _attach_qr(self, invoice: Invoice) -> None:
        try:
            url, image = generate_qr(invoice)
            self._repository.attach_qr(invoice, url, image)
        except Exception as e:
            # The CAE is granted; a missing QR can be regenerated later
            logger.error(f"🔥 [Fiscal] QR generation failed for invoice {invoice.pk}: {e}")

    def _mark_sale_invoiced(self, invoice: Invoice) -> None:
        try:
            self._repository.mark_sale_invoiced(invoice.sale_id, invoice)
        except Exception as e:
            logger.error(f"🔥 [Fiscal] Could not mark sale {invoice.sale_id} as invoiced: {e}")
