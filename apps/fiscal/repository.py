"""
Persistence contract for the fiscal core.

``FiscalRepository`` is the narrow interface the issuer, token manager and
retry coordinator depend on. ``DjangoFiscalRepository`` implements it on top
of the ORM; tests may swap in an in-memory implementation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from django.apps import apps as django_apps
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import RETRYABLE_ERROR_KINDS, AlreadyIssuedError, InvoiceNotFoundError, TaxConfigurationError
from .models import (
    AuthTokenRecord,
    Contingency,
    ContingencyStatus,
    Invoice,
    InvoiceStatus,
    RetryAttempt,
    TaxConfiguration,
)
from .settings import fiscal_settings
from .signals import sale_invoiced
from .types import AuthToken, ContingencyDetails

logger = logging.getLogger(__name__)


class FiscalRepository(Protocol):
    """Everything the fiscal core reads and writes."""

    def find_active_tax_configuration(self, branch_id: str) -> TaxConfiguration | None: ...
    def list_active_tax_configurations(self) -> list[TaxConfiguration]: ...

    def create_or_replace_token(self, tax_id: str, token: AuthToken) -> AuthToken: ...
    def find_token(self, tax_id: str) -> AuthToken | None: ...
    def list_tokens(self) -> list[AuthToken]: ...

    def find_open_invoice(self, sale_id: str) -> Invoice | None: ...
    def find_latest_invoice(self, sale_id: str) -> Invoice | None: ...
    def get_invoice(self, invoice_id: Any) -> Invoice: ...
    def create_invoice(self, **fields: Any) -> Invoice: ...
    def update_invoice_status(self, invoice: Invoice, status: str, **fields: Any) -> Invoice: ...
    def attach_qr(self, invoice: Invoice, url: str, image: str) -> Invoice: ...

    def append_retry_attempt(self, **fields: Any) -> RetryAttempt: ...
    def list_retry_attempts(self, invoice_id: Any) -> list[RetryAttempt]: ...
    def list_retry_candidates(self, now: datetime | None = None, limit: int = 50) -> list[Invoice]: ...
    def list_stale_invoices(self, older_than: datetime) -> list[Invoice]: ...
    def increment_auto_retry(self, invoice: Invoice) -> None: ...

    def mark_sale_invoiced(self, sale_id: str, invoice: Invoice | None = None) -> None: ...
    def raise_contingency(self, details: ContingencyDetails) -> Contingency: ...
    def find_open_contingency(self, invoice_id: Any) -> Contingency | None: ...
    def refresh_contingency(self, contingency: Contingency, details: ContingencyDetails) -> Contingency: ...
    def resolve_contingencies(self, invoice_id: Any, response: str, resolved_by: str) -> int: ...


class DjangoFiscalRepository:
    """ORM-backed ``FiscalRepository``."""

    # --- Tax configuration ---

    def find_active_tax_configuration(self, branch_id: str) -> TaxConfiguration | None:
        configs = list(TaxConfiguration.objects.filter(branch_id=branch_id, is_active=True)[:2])
        if len(configs) > 1:
            raise TaxConfigurationError(f"Branch {branch_id} has more than one active tax configuration")
        return configs[0] if configs else None

    def list_active_tax_configurations(self) -> list[TaxConfiguration]:
        return list(TaxConfiguration.objects.filter(is_active=True).order_by("tax_id", "point_of_sale"))

    # --- Tokens ---

    def create_or_replace_token(self, tax_id: str, token: AuthToken) -> AuthToken:
        record = AuthTokenRecord.objects.filter(tax_id=tax_id).first() or AuthTokenRecord(tax_id=tax_id)
        record.set_credentials(token.token, token.sign)
        record.expires_at = token.expires_at
        record.generated_at = token.generated_at
        record.environment = fiscal_settings.environment.value
        record.save()
        return token

    def find_token(self, tax_id: str) -> AuthToken | None:
        record = AuthTokenRecord.objects.filter(tax_id=tax_id).first()
        if record is None:
            return None
        token = record.to_domain()
        if not token.token or not token.sign:
            logger.warning(f"⚠️ [Fiscal] Stored token for {tax_id} could not be decrypted, ignoring it")
            return None
        return token

    def list_tokens(self) -> list[AuthToken]:
        tokens = [record.to_domain() for record in AuthTokenRecord.objects.all()]
        return [t for t in tokens if t.token and t.sign]

    # --- Invoices ---

    def find_open_invoice(self, sale_id: str) -> Invoice | None:
        return Invoice.objects.filter(sale_id=sale_id).exclude(status=InvoiceStatus.ERROR.value).first()

    def find_latest_invoice(self, sale_id: str) -> Invoice | None:
        return Invoice.objects.filter(sale_id=sale_id).order_by("-created_at").first()

    def get_invoice(self, invoice_id: Any) -> Invoice:
        try:
            return Invoice.objects.get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValidationError, ValueError) as e:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found") from e

    def create_invoice(self, **fields: Any) -> Invoice:
        try:
            with transaction.atomic():
                return Invoice.objects.create(**fields)
        except IntegrityError as e:
            raise AlreadyIssuedError(f"Sale {fields.get('sale_id')} already has an open invoice") from e

    def update_invoice_status(self, invoice: Invoice, status: str, **fields: Any) -> Invoice:
        touched = invoice.apply_transition(status, **fields)
        try:
            with transaction.atomic():
                invoice.save(update_fields=touched)
        except IntegrityError as e:
            raise AlreadyIssuedError(f"Sale {invoice.sale_id} already has another open invoice") from e
        return invoice

    def attach_qr(self, invoice: Invoice, url: str, image: str) -> Invoice:
        invoice.qr_url = url
        invoice.qr_image = image
        invoice.save(update_fields=["qr_url", "qr_image", "updated_at"])
        return invoice

    # --- Retry attempts ---

    def append_retry_attempt(self, **fields: Any) -> RetryAttempt:
        return RetryAttempt.objects.create(**fields)

    def list_retry_attempts(self, invoice_id: Any) -> list[RetryAttempt]:
        return list(RetryAttempt.objects.filter(invoice_id=invoice_id).order_by("-started_at", "-id"))

    def list_retry_candidates(self, now: datetime | None = None, limit: int = 50) -> list[Invoice]:
        now = now or timezone.now()
        return list(
            Invoice.objects.filter(
                status=InvoiceStatus.ERROR.value,
                error_kind__in=RETRYABLE_ERROR_KINDS,
                next_retry_at__isnull=False,
                next_retry_at__lte=now,
                auto_retry_count__lt=Invoice.MAX_AUTO_RETRIES,
            ).order_by("next_retry_at")[:limit]
        )

    def list_stale_invoices(self, older_than: datetime) -> list[Invoice]:
        return list(
            Invoice.objects.filter(
                status__in=[InvoiceStatus.PENDING.value, InvoiceStatus.PROCESSING.value],
                updated_at__lt=older_than,
            ).order_by("updated_at")
        )

    def increment_auto_retry(self, invoice: Invoice) -> None:
        Invoice.objects.filter(pk=invoice.pk).update(auto_retry_count=F("auto_retry_count") + 1)
        invoice.refresh_from_db(fields=["auto_retry_count"])

    # --- Sales ---

    def mark_sale_invoiced(self, sale_id: str, invoice: Invoice | None = None) -> None:
        """Flip the sale's invoiced flag (when a sale model is configured) and notify listeners."""
        model_label = fiscal_settings.sale_model
        if model_label:
            sale_model = django_apps.get_model(model_label)
            updated = sale_model.objects.filter(pk=sale_id).update(**{fiscal_settings.sale_invoiced_field: True})
            if not updated:
                logger.warning(f"⚠️ [Fiscal] Sale {sale_id} not found in {model_label}, flag not set")
        sale_invoiced.send(sender=self.__class__, sale_id=sale_id, invoice=invoice)

    # --- Contingencies ---

    def raise_contingency(self, details: ContingencyDetails) -> Contingency:
        return Contingency.objects.create(
            title=details.title[:200],
            description=details.description,
            invoice_id=details.invoice_id,
            metadata=details.metadata,
            created_by=details.created_by,
        )

    def find_open_contingency(self, invoice_id: Any) -> Contingency | None:
        return (
            Contingency.objects.filter(invoice_id=invoice_id, status__in=ContingencyStatus.open_statuses())
            .order_by("-created_at")
            .first()
        )

    def refresh_contingency(self, contingency: Contingency, details: ContingencyDetails) -> Contingency:
        contingency.description = details.description
        contingency.metadata = details.metadata
        contingency.save(update_fields=["description", "metadata", "updated_at"])
        return contingency

    def resolve_contingencies(self, invoice_id: Any, response: str, resolved_by: str) -> int:
        return Contingency.objects.filter(
            invoice_id=invoice_id,
            status__in=ContingencyStatus.open_statuses(),
        ).update(
            status=ContingencyStatus.RESOLVED.value,
            response=response,
            resolved_by=resolved_by,
            resolved_at=timezone.now(),
            updated_at=timezone.now(),
        )
