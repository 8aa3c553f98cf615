"""
Fiscal invoicing models.

- TaxConfiguration: tax identity and point of sale per branch (edited in admin)
- AuthTokenRecord: WSAA ticket per tax id, token and sign encrypted at rest
- Invoice: one electronic voucher per sale, with its submission state
- RetryAttempt: append-only audit trail of retries
- Contingency: administrative task raised when issuance fails
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar

from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.common.encryption import decrypt_sensitive_data, encrypt_sensitive_data

from .exceptions import InvalidTransitionError
from .settings import DEFAULT_VAT_RATE, VoucherType
from .types import AuthToken


class InvoiceStatus(StrEnum):
    """Invoice submission status."""

    PENDING = "pending"  # Created, not yet sent
    PROCESSING = "processing"  # Exchange with WSFEv1 in flight
    COMPLETED = "completed"  # CAE granted (terminal)
    ERROR = "error"  # Rejected or failed, eligible for retry

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(status.value, status.name.title()) for status in cls]

    @classmethod
    def open_statuses(cls) -> set[str]:
        """Statuses that block a second invoice for the same sale."""
        return {cls.PENDING.value, cls.PROCESSING.value, cls.COMPLETED.value}


# current status -> statuses it may move to
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    InvoiceStatus.PENDING.value: {InvoiceStatus.PROCESSING.value, InvoiceStatus.ERROR.value},
    InvoiceStatus.PROCESSING.value: {
        InvoiceStatus.PROCESSING.value,
        InvoiceStatus.COMPLETED.value,
        InvoiceStatus.ERROR.value,
    },
    InvoiceStatus.ERROR.value: {InvoiceStatus.PROCESSING.value},
    InvoiceStatus.COMPLETED.value: set(),
}


class RetryResult(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(r.value, r.name.title()) for r in cls]


class ContingencyStatus(StrEnum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(s.value, s.name.replace("_", " ").title()) for s in cls]

    @classmethod
    def open_statuses(cls) -> set[str]:
        return {cls.PENDING.value, cls.IN_REVIEW.value}


class ContingencyOrigin(StrEnum):
    INVOICING = "invoicing"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(o.value, o.name.title()) for o in cls]


# ===============================================================================
# TAX CONFIGURATION
# ===============================================================================


class TaxConfiguration(models.Model):
    """Tax identity used by one sales branch."""

    branch_id = models.CharField(max_length=64, db_index=True, help_text="Sales branch identifier")
    tax_id = models.CharField(max_length=11, help_text="Issuer CUIT (11 digits, no dashes)")
    point_of_sale = models.PositiveIntegerField(help_text="AFIP point of sale number")
    vat_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=DEFAULT_VAT_RATE,
        help_text="VAT percentage applied to this branch's sales",
    )
    is_active = models.BooleanField(default=True, db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "fiscal_tax_configuration"
        verbose_name = "Tax Configuration"
        verbose_name_plural = "Tax Configurations"
        ordering = ["branch_id"]
        constraints = [
            models.UniqueConstraint(
                fields=["point_of_sale"],
                condition=Q(is_active=True),
                name="unique_active_point_of_sale",
            ),
        ]

    def __str__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"{self.branch_id} → CUIT {self.tax_id} POS {self.point_of_sale} ({state})"


# ===============================================================================
# AUTH TOKENS
# ===============================================================================


class AuthTokenRecord(models.Model):
    """
    Stored WSAA ticket for one tax id.

    One row per tax id; renewal overwrites the row. Token and sign are
    Fernet-encrypted and only decrypted into an ``AuthToken``.
    """

    tax_id = models.CharField(max_length=11, unique=True)
    token = models.TextField(help_text="Encrypted WSAA token")
    sign = models.TextField(help_text="Encrypted WSAA sign")
    expires_at = models.DateTimeField(db_index=True)
    generated_at = models.DateTimeField()
    environment = models.CharField(max_length=20, default="homologation")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "fiscal_auth_token"
        verbose_name = "WSAA Token"
        verbose_name_plural = "WSAA Tokens"
        ordering = ["tax_id"]

    def __str__(self) -> str:
        return f"WSAA token {self.tax_id} (expires {self.expires_at:%Y-%m-%d %H:%M})"

    def set_credentials(self, token: str, sign: str) -> None:
        self.token = encrypt_sensitive_data(token)
        self.sign = encrypt_sensitive_data(sign)

    def to_domain(self) -> AuthToken:
        return AuthToken(
            tax_id=self.tax_id,
            token=decrypt_sensitive_data(self.token),
            sign=decrypt_sensitive_data(self.sign),
            expires_at=self.expires_at,
            generated_at=self.generated_at,
        )

    @property
    def is_expired(self) -> bool:
        return timezone.now() >= self.expires_at


# ===============================================================================
# INVOICES
# ===============================================================================


class Invoice(models.Model):
    """
    Electronic voucher for one sale.

    Lifecycle: pending → processing → completed | error. ``error`` invoices go
    back to ``processing`` on retry; ``completed`` is terminal. The number stays
    0 until WSFEv1 assigns one.
    """

    MAX_AUTO_RETRIES: ClassVar[int] = 5
    RETRY_DELAYS: ClassVar[list[int]] = [300, 900, 3600, 7200, 21600]  # 5m, 15m, 1h, 2h, 6h

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    sale_id = models.CharField(max_length=64, db_index=True)
    branch_id = models.CharField(max_length=64)
    tax_id = models.CharField(max_length=11, help_text="Issuer CUIT at issuance time")

    voucher_type = models.CharField(max_length=1, choices=VoucherType.choices())
    point_of_sale = models.PositiveIntegerField()
    invoice_number = models.PositiveIntegerField(default=0, help_text="Assigned by AFIP; 0 until completed")
    pending_number = models.PositiveIntegerField(
        default=0, help_text="Number sent in an unconfirmed FECAESolicitar; looked up before resubmitting"
    )
    issue_date = models.DateField(default=timezone.localdate)

    cae = models.CharField(max_length=14, blank=True, help_text="Código de Autorización Electrónico")
    cae_due_date = models.DateField(null=True, blank=True)

    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices(),
        default=InvoiceStatus.PENDING.value,
        db_index=True,
    )
    error = models.TextField(blank=True)
    error_kind = models.CharField(max_length=50, blank=True, help_text="Exception class of the last failure")
    protocol_log = models.TextField(blank=True)
    authority_response = models.JSONField(default=dict, blank=True)

    qr_url = models.TextField(blank=True)
    qr_image = models.TextField(blank=True, help_text="PNG data URI")

    # Sale snapshot, needed to resubmit without the sales store
    total = models.DecimalField(max_digits=14, decimal_places=2)
    net_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))
    vat_rate = models.DecimalField(max_digits=5, decimal_places=2, default=DEFAULT_VAT_RATE)
    buyer_tax_id = models.CharField(max_length=11, blank=True)
    line_items = models.JSONField(default=list, blank=True)

    # Automatic retry bookkeeping
    auto_retry_count = models.PositiveIntegerField(default=0)
    next_retry_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "fiscal_invoice"
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "next_retry_at"],
                name="fiscal_invoice_retry_idx",
                condition=Q(status="error"),
            ),
            models.Index(fields=["status", "updated_at"], name="fiscal_invoice_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["sale_id"],
                condition=~Q(status="error"),
                name="unique_open_invoice_per_sale",
            ),
        ]

    def __str__(self) -> str:
        return f"Factura {self.voucher_type} {self.formatted_number} [{self.status}]"

    @property
    def formatted_number(self) -> str:
        return f"{self.point_of_sale:05d}-{self.invoice_number:08d}"

    @property
    def is_completed(self) -> bool:
        return self.status == InvoiceStatus.COMPLETED.value

    @property
    def voucher_code(self) -> int:
        return VoucherType(self.voucher_type).code

    def can_transition_to(self, status: str) -> bool:
        return status in ALLOWED_TRANSITIONS.get(self.status, set())

    def apply_transition(self, status: str, **fields: Any) -> list[str]:
        """
        Move to ``status`` and set ``fields`` in memory.

        Returns the field names touched, for ``save(update_fields=...)``.
        """
        if not self.can_transition_to(status):
            raise InvalidTransitionError(f"Invoice {self.id}: {self.status} → {status} is not allowed")

        self.status = status
        touched = ["status", "updated_at"]
        if status == InvoiceStatus.COMPLETED.value:
            self.completed_at = timezone.now()
            self.next_retry_at = None
            touched += ["completed_at", "next_retry_at"]

        for name, value in fields.items():
            setattr(self, name, value)
            touched.append(name)
        return touched

    def next_auto_retry_at(self) -> datetime | None:
        """When the next automatic retry is due, or None once retries are exhausted."""
        if self.auto_retry_count >= self.MAX_AUTO_RETRIES:
            return None
        delay_index = min(self.auto_retry_count, len(self.RETRY_DELAYS) - 1)
        return timezone.now() + timedelta(seconds=self.RETRY_DELAYS[delay_index])


# ===============================================================================
# RETRY AUDIT TRAIL
# ===============================================================================


class RetryAttempt(models.Model):
    """One retry of an invoice submission. Written once, never updated."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="retry_attempts")
    user_id = models.CharField(max_length=64, help_text="Requesting user, or 'system' for automatic retries")
    previous_status = models.CharField(max_length=20, choices=InvoiceStatus.choices())
    result = models.CharField(max_length=20, choices=RetryResult.choices())
    automatic = models.BooleanField(default=False)

    started_at = models.DateTimeField()
    completed_at = models.DateTimeField()

    error = models.TextField(blank=True)
    protocol_log = models.TextField(blank=True)
    cae = models.CharField(max_length=14, blank=True)

    class Meta:
        db_table = "fiscal_retry_attempt"
        verbose_name = "Retry Attempt"
        verbose_name_plural = "Retry Attempts"
        ordering = ["-started_at", "-id"]

    def __str__(self) -> str:
        return f"Retry {self.invoice_id} by {self.user_id}: {self.result}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise InvalidTransitionError("Retry attempts are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> Any:
        raise InvalidTransitionError("Retry attempts are append-only")

    @property
    def succeeded(self) -> bool:
        return self.result == RetryResult.SUCCEEDED.value


# ===============================================================================
# CONTINGENCIES
# ===============================================================================


class Contingency(models.Model):
    """Administrative task asking staff to look at a failed issuance."""

    title = models.CharField(max_length=200)
    description = models.TextField()
    origin = models.CharField(
        max_length=20,
        choices=ContingencyOrigin.choices(),
        default=ContingencyOrigin.INVOICING.value,
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="contingencies",
    )
    metadata = models.JSONField(default=dict, blank=True)

    status = models.CharField(
        max_length=20,
        choices=ContingencyStatus.choices(),
        default=ContingencyStatus.PENDING.value,
        db_index=True,
    )
    response = models.TextField(blank=True)
    created_by = models.CharField(max_length=64, default="system")
    resolved_by = models.CharField(max_length=64, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "fiscal_contingency"
        verbose_name = "Contingency"
        verbose_name_plural = "Contingencies"
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.title} [{self.status}]"

    @property
    def is_open(self) -> bool:
        return self.status in ContingencyStatus.open_statuses()

    def close(self, status: str, response: str, resolved_by: str) -> None:
        if not self.is_open:
            raise InvalidTransitionError(f"Contingency {self.pk} is already {self.status}")
        self.status = status
        self.response = response
        self.resolved_by = resolved_by
        self.resolved_at = timezone.now()
        self.save(update_fields=["status", "response", "resolved_by", "resolved_at", "updated_at"])
