"""
Retrying failed invoices.

Manual retries come from back-office staff (admin action or management
command); automatic ones from the scheduled task, only for transient error
kinds and following the backoff table on ``Invoice``. Every retry leaves an
immutable ``RetryAttempt``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from .exceptions import AlreadyIssuedError, FiscalError
from .metrics import metrics
from .models import InvoiceStatus, RetryResult
from .settings import fiscal_settings

if TYPE_CHECKING:
    from .contingency import ContingencyService
    from .models import RetryAttempt
    from .repository import FiscalRepository
    from .service import InvoiceIssuer

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"
STALE_ERROR_KIND = "StaleInvoice"


@dataclass
class RetrySummary:
    """Result of an automatic retry pass."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": self.details,
        }


class RetryCoordinator:
    """Manual and automatic resubmission with an audit trail."""

    def __init__(
        self,
        repository: FiscalRepository,
        issuer: InvoiceIssuer,
        contingencies: ContingencyService,
    ) -> None:
        self._repository = repository
        self._issuer = issuer
        self._contingencies = contingencies

    def retry(self, invoice_id: Any, user_id: str, automatic: bool = False) -> RetryAttempt:
        """
        Resubmit one invoice and record the attempt.

        Raises:
            InvoiceNotFoundError: no such invoice
            AlreadyIssuedError: the invoice is completed, or the sale has another open invoice
        """
        invoice = self._repository.get_invoice(invoice_id)

        with self._issuer.sale_lock(invoice.sale_id):
            # Status may have changed while waiting for the lock
            invoice = self._repository.get_invoice(invoice_id)
            if invoice.is_completed:
                raise AlreadyIssuedError(
                    f"Invoice {invoice.pk} is already completed (CAE {invoice.cae}, number {invoice.formatted_number})"
                )
            other = self._repository.find_open_invoice(invoice.sale_id)
            if other is not None and other.pk != invoice.pk:
                raise AlreadyIssuedError(f"Sale {invoice.sale_id} already has invoice {other.pk} [{other.status}]")

            previous_status = invoice.status
            started_at = timezone.now()
            logger.info(f"🔄 [Retry] Invoice {invoice.pk} ({previous_status}) retried by {user_id}")

            result = self._issuer.submit(invoice)

            attempt = self._repository.append_retry_attempt(
                invoice=invoice,
                user_id=str(user_id),
                previous_status=previous_status,
                result=RetryResult.SUCCEEDED.value if result.success else RetryResult.FAILED.value,
                automatic=automatic,
                started_at=started_at,
                completed_at=timezone.now(),
                error=result.error_message,
                protocol_log=result.protocol_log,
                cae=invoice.cae if result.success else "",
            )

        metrics.record_retry(attempt.result, automatic)
        if result.success:
            resolved = self._repository.resolve_contingencies(
                invoice.pk,
                f"Invoice {invoice.formatted_number} authorized on retry (CAE {invoice.cae})",
                str(user_id),
            )
            logger.info(f"✅ [Retry] Invoice {invoice.pk} authorized, {resolved} contingencies resolved")
        else:
            logger.warning(
                f"⚠️ [Retry] Invoice {invoice.pk} still failing: {result.error_kind}: {result.error_message}"
            )
        return attempt

    def history(self, invoice_id: Any) -> list[RetryAttempt]:
        """Retry attempts for an invoice, newest first."""
        return self._repository.list_retry_attempts(invoice_id)

    # --- Automatic recovery ---

    def retry_due_invoices(self, limit: int | None = None) -> RetrySummary:
        """Retry invoices whose transient failure has reached its backoff time."""
        summary = RetrySummary()
        candidates = self._repository.list_retry_candidates(limit=limit or fiscal_settings.retry_batch_size)

        for invoice in candidates:
            self._repository.increment_auto_retry(invoice)
            summary.attempted += 1
            try:
                attempt = self.retry(invoice.pk, SYSTEM_USER, automatic=True)
            except AlreadyIssuedError as e:
                summary.skipped += 1
                summary.details.append({"invoice_id": str(invoice.pk), "result": "skipped", "error": str(e)})
                continue
            except FiscalError as e:
                summary.failed += 1
                summary.details.append({"invoice_id": str(invoice.pk), "result": "failed", "error": str(e)})
                logger.error(f"🔥 [Retry] Automatic retry of {invoice.pk} aborted: {e}")
                continue

            if attempt.succeeded:
                summary.succeeded += 1
            else:
                summary.failed += 1
            summary.details.append({"invoice_id": str(invoice.pk), "result": attempt.result, "error": attempt.error})

        if summary.attempted:
            logger.info(
                f"[Retry] Automatic pass: {summary.succeeded} succeeded, {summary.failed} failed, "
                f"{summary.skipped} skipped"
            )
        return summary

    def sweep_stale_invoices(self, minutes: int | None = None) -> int:
        """
        Move invoices stuck in pending/processing to error with a contingency.

        They are never resubmitted automatically: the authority may have
        authorized a number we never heard back about.
        """
        threshold = minutes if minutes is not None else fiscal_settings.stale_invoice_minutes
        older_than = timezone.now() - timedelta(minutes=threshold)
        swept = 0

        for invoice in self._repository.list_stale_invoices(older_than):
            message = (
                f"Invoice stuck in '{invoice.status}' since {invoice.updated_at:%Y-%m-%d %H:%M}. "
                "Check the last authorized number in AFIP before retrying."
            )
            self._repository.update_invoice_status(
                invoice,
                InvoiceStatus.ERROR.value,
                error=message,
                error_kind=STALE_ERROR_KIND,
                next_retry_at=None,
            )
            self._contingencies.raise_for_invoice(invoice, message, STALE_ERROR_KIND)
            swept += 1

        if swept:
            logger.warning(f"⚠️ [Retry] Moved {swept} stale invoices to error")
        return swept
