"""
Django Admin configuration for fiscal invoicing.

Back-office staff edit tax configurations, inspect invoices and their
protocol logs, retry failed invoices and work through contingencies here.
"""

from __future__ import annotations

from typing import Any

from django.contrib import admin, messages
from django.db.models import QuerySet
from django.http import HttpRequest
from django.utils.html import format_html

from .contingency import ContingencyService
from .exceptions import FiscalError
from .models import (
    AuthTokenRecord,
    Contingency,
    ContingencyStatus,
    Invoice,
    InvoiceStatus,
    RetryAttempt,
    TaxConfiguration,
)
from .registry import get_registry

# ===============================================================================
# Inline Admin Classes
# ===============================================================================


class RetryAttemptInline(admin.TabularInline):
    model = RetryAttempt
    extra = 0
    fields = ("started_at", "user_id", "automatic", "previous_status", "result", "cae", "error")
    readonly_fields = fields
    can_delete = False
    max_num = 0
    show_change_link = True


class ContingencyInline(admin.TabularInline):
    model = Contingency
    extra = 0
    fields = ("title", "status", "created_at", "resolved_by", "resolved_at")
    readonly_fields = fields
    can_delete = False
    max_num = 0
    show_change_link = True


# ===============================================================================
# Model Admin Classes
# ===============================================================================


@admin.register(TaxConfiguration)
class TaxConfigurationAdmin(admin.ModelAdmin):
    list_display = ("branch_id", "tax_id", "point_of_sale", "vat_rate", "is_active", "updated_at")
    list_filter = ("is_active",)
    search_fields = ("branch_id", "tax_id")
    readonly_fields = ("created_at", "updated_at")


@admin.register(AuthTokenRecord)
class AuthTokenRecordAdmin(admin.ModelAdmin):
    """Read-only view of WSAA tokens; token and sign are never shown."""

    list_display = ("tax_id", "environment", "generated_at", "expires_at", "expired")
    list_filter = ("environment",)
    search_fields = ("tax_id",)
    fields = ("tax_id", "environment", "generated_at", "expires_at", "created_at", "updated_at")
    readonly_fields = fields

    def has_add_permission(self, request: HttpRequest) -> bool:
        return False

    def has_change_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False

    @admin.display(boolean=True, description="Expired")
    def expired(self, obj: AuthTokenRecord) -> bool:
        return obj.is_expired


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = (
        "sale_id",
        "branch_id",
        "voucher_type",
        "number_display",
        "total",
        "status_badge",
        "cae",
        "auto_retry_count",
        "created_at",
    )
    list_filter = ("status", "voucher_type", "point_of_sale", "error_kind", "created_at")
    search_fields = ("sale_id", "cae", "tax_id", "buyer_tax_id")
    date_hierarchy = "created_at"
    inlines = [RetryAttemptInline, ContingencyInline]
    actions = ["retry_authorization"]

    fieldsets = (
        (None, {
            "fields": ("id", "sale_id", "branch_id", "status", "error_kind", "error")
        }),
        ("Voucher", {
            "fields": (
                "tax_id", "voucher_type", "point_of_sale", "invoice_number", "pending_number",
                "issue_date", "cae", "cae_due_date",
            )
        }),
        ("Amounts", {
            "fields": ("total", "net_amount", "tax_amount", "vat_rate", "buyer_tax_id", "line_items")
        }),
        ("QR", {
            "fields": ("qr_url", "qr_preview"),
            "classes": ("collapse",)
        }),
        ("Protocol", {
            "fields": ("protocol_log", "authority_response"),
            "classes": ("collapse",)
        }),
        ("Retries", {
            "fields": ("auto_retry_count", "next_retry_at", "created_at", "updated_at", "completed_at")
        }),
    )

    def get_readonly_fields(self, request: HttpRequest, obj: Any = None) -> list[str]:
        # Invoices only change through the issuer
        return [f.name for f in self.model._meta.fields] + ["qr_preview"]

    def has_add_permission(self, request: HttpRequest) -> bool:
        return False

    def has_delete_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False

    @admin.display(description="Number", ordering="invoice_number")
    def number_display(self, obj: Invoice) -> str:
        return obj.formatted_number if obj.invoice_number else "-"

    @admin.display(description="Status", ordering="status")
    def status_badge(self, obj: Invoice) -> str:
        colors = {
            InvoiceStatus.PENDING.value: "#6c757d",
            InvoiceStatus.PROCESSING.value: "#0d6efd",
            InvoiceStatus.COMPLETED.value: "#198754",
            InvoiceStatus.ERROR.value: "#dc3545",
        }
        return format_html(
            '<span style="color: {}; font-weight: bold;">{}</span>',
            colors.get(obj.status, "#000"),
            obj.get_status_display(),
        )

    @admin.display(description="QR")
    def qr_preview(self, obj: Invoice) -> str:
        if not obj.qr_image:
            return "-"
        return format_html('<img src="{}" width="160" height="160" alt="QR">', obj.qr_image)

    @admin.action(description="Retry authorization with AFIP")
    def retry_authorization(self, request: HttpRequest, queryset: QuerySet[Invoice]) -> None:
        retries = get_registry().retries
        user_id = str(request.user.pk or request.user)
        succeeded = failed = 0

        for invoice in queryset:
            try:
                attempt = retries.retry(invoice.pk, user_id)
            except FiscalError as e:
                self.message_user(request, f"{invoice.sale_id}: {e}", level=messages.WARNING)
                continue
            if attempt.succeeded:
                succeeded += 1
            else:
                failed += 1
                self.message_user(request, f"{invoice.sale_id}: {attempt.error}", level=messages.ERROR)

        if succeeded:
            self.message_user(request, f"{succeeded} invoice(s) authorized", level=messages.SUCCESS)
        if failed:
            self.message_user(request, f"{failed} invoice(s) still failing", level=messages.WARNING)


@admin.register(RetryAttempt)
class RetryAttemptAdmin(admin.ModelAdmin):
    """Append-only audit trail."""

    list_display = ("invoice", "user_id", "automatic", "previous_status", "result", "started_at")
    list_filter = ("result", "automatic", "started_at")
    search_fields = ("invoice__sale_id", "user_id", "cae")

    def get_readonly_fields(self, request: HttpRequest, obj: Any = None) -> list[str]:
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request: HttpRequest) -> bool:
        return False

    def has_change_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False

    def has_delete_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False


@admin.register(Contingency)
class ContingencyAdmin(admin.ModelAdmin):
    list_display = ("title", "origin", "status", "invoice", "created_by", "resolved_by", "created_at")
    list_filter = ("status", "origin", "created_at")
    search_fields = ("title", "description", "invoice__sale_id")
    readonly_fields = ("invoice", "metadata", "created_by", "resolved_by", "resolved_at", "created_at", "updated_at")
    actions = ["start_review", "mark_resolved", "mark_rejected"]

    def _apply(self, request: HttpRequest, queryset: QuerySet[Contingency], operation: Any, *args: Any) -> int:
        user_id = str(request.user.pk or request.user)
        done = 0
        for contingency in queryset:
            try:
                operation(contingency, *args, user_id)
            except FiscalError as e:
                self.message_user(request, f"{contingency.pk}: {e}", level=messages.WARNING)
                continue
            done += 1
        return done

    @admin.action(description="Start review")
    def start_review(self, request: HttpRequest, queryset: QuerySet[Contingency]) -> None:
        pending = queryset.filter(status=ContingencyStatus.PENDING.value)
        done = self._apply(request, pending, ContingencyService.start_review)
        self.message_user(request, f"{done} contingency(ies) in review")

    @admin.action(description="Mark as resolved")
    def mark_resolved(self, request: HttpRequest, queryset: QuerySet[Contingency]) -> None:
        done = self._apply(request, queryset, ContingencyService.resolve, "Resolved from admin")
        self.message_user(request, f"{done} contingency(ies) resolved")

    @admin.action(description="Reject")
    def mark_rejected(self, request: HttpRequest, queryset: QuerySet[Contingency]) -> None:
        done = self._apply(request, queryset, ContingencyService.reject, "Rejected from admin")
        self.message_user(request, f"{done} contingency(ies) rejected")
