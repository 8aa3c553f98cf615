"""
Contingency workflow.

A contingency is a back-office task raised when an invoice could not be
issued. Staff review it, retry the invoice or settle it by hand, then close it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.utils import timezone

from .exceptions import InvalidTransitionError
from .metrics import metrics
from .models import Contingency, ContingencyOrigin, ContingencyStatus
from .types import ContingencyDetails

if TYPE_CHECKING:
    from .models import Invoice
    from .repository import FiscalRepository

logger = logging.getLogger(__name__)


class ContingencyService:
    """Raise and close contingencies."""

    def __init__(self, repository: FiscalRepository) -> None:
        self._repository = repository

    def raise_for_invoice(self, invoice: Invoice, error: str, error_kind: str) -> Contingency | None:
        """
        Open a contingency for a failed invoice, or update the one still open.

        An invoice has at most one open contingency; later failures refresh
        its description and bump ``metadata["failures"]``.

        Failures here are logged and swallowed: the invoice error is already
        persisted and must not be masked by a contingency problem.
        """
        try:
            existing = self._repository.find_open_contingency(invoice.pk)
            failures = existing.metadata.get("failures", 1) + 1 if existing is not None else 1
            details = self._details(invoice, error, error_kind, failures)
            if existing is not None:
                details.metadata["raised_at"] = existing.metadata.get("raised_at", details.metadata["raised_at"])
                contingency = self._repository.refresh_contingency(existing, details)
            else:
                contingency = self._repository.raise_contingency(details)
        except Exception as e:
            logger.error(f"🔥 [Contingency] Failed to raise contingency for invoice {invoice.pk}: {e}")
            return None

        if existing is not None:
            logger.warning(
                f"⚠️ [Contingency] Sale {invoice.sale_id} failed again ({failures} failures): {error_kind}"
            )
            return contingency

        metrics.record_contingency(ContingencyOrigin.INVOICING.value)
        logger.warning(f"⚠️ [Contingency] Raised for sale {invoice.sale_id}: {error_kind}")
        return contingency

    @staticmethod
    def _details(invoice: Invoice, error: str, error_kind: str, failures: int) -> ContingencyDetails:
        return ContingencyDetails(
            title=f"Invoice failed for sale {invoice.sale_id}",
            description=(
                f"Factura {invoice.voucher_type} for sale {invoice.sale_id} "
                f"(branch {invoice.branch_id}, POS {invoice.point_of_sale}) could not be issued.\n"
                f"{error_kind}: {error}"
                + (f"\nFailed attempts: {failures}" if failures > 1 else "")
            ),
            invoice_id=str(invoice.pk),
            metadata={
                "origin": ContingencyOrigin.INVOICING.value,
                "sale_id": invoice.sale_id,
                "branch_id": invoice.branch_id,
                "tax_id": invoice.tax_id,
                "error_kind": error_kind,
                "total": str(invoice.total),
                "failures": failures,
                "raised_at": timezone.now().isoformat(),
            },
        )

    @staticmethod
    def start_review(contingency: Contingency, user_id: str) -> Contingency:
        if contingency.status != ContingencyStatus.PENDING.value:
            raise InvalidTransitionError(f"Contingency {contingency.pk} is {contingency.status}, not pending")
        contingency.status = ContingencyStatus.IN_REVIEW.value
        contingency.resolved_by = user_id
        contingency.save(update_fields=["status", "resolved_by", "updated_at"])
        return contingency

    @staticmethod
    def resolve(contingency: Contingency, response: str, user_id: str) -> Contingency:
        contingency.close(ContingencyStatus.RESOLVED.value, response, user_id)
        logger.info(f"✅ [Contingency] {contingency.pk} resolved by {user_id}")
        return contingency

    @staticmethod
    def reject(contingency: Contingency, response: str, user_id: str) -> Contingency:
        contingency.close(ContingencyStatus.REJECTED.value, response, user_id)
        logger.info(f"[Contingency] {contingency.pk} rejected by {user_id}")
        return contingency

    @staticmethod
    def open_contingencies() -> list[Contingency]:
        return list(Contingency.objects.filter(status__in=ContingencyStatus.open_statuses()).select_related("invoice"))
