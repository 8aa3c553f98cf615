# Generated migration for AFIP electronic invoicing

import decimal
import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    """Tax configurations, WSAA tokens, invoices, retry audit trail and contingencies."""

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="TaxConfiguration",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "branch_id",
                    models.CharField(db_index=True, help_text="Sales branch identifier", max_length=64),
                ),
                ("tax_id", models.CharField(help_text="Issuer CUIT (11 digits, no dashes)", max_length=11)),
                ("point_of_sale", models.PositiveIntegerField(help_text="AFIP point of sale number")),
                (
                    "vat_rate",
                    models.DecimalField(
                        decimal_places=2,
                        default=decimal.Decimal("21"),
                        help_text="VAT percentage applied to this branch's sales",
                        max_digits=5,
                    ),
                ),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Tax Configuration",
                "verbose_name_plural": "Tax Configurations",
                "db_table": "fiscal_tax_configuration",
                "ordering": ["branch_id"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True)),
                        fields=("point_of_sale",),
                        name="unique_active_point_of_sale",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuthTokenRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tax_id", models.CharField(max_length=11, unique=True)),
                ("token", models.TextField(help_text="Encrypted WSAA token")),
                ("sign", models.TextField(help_text="Encrypted WSAA sign")),
                ("expires_at", models.DateTimeField(db_index=True)),
                ("generated_at", models.DateTimeField()),
                ("environment", models.CharField(default="homologation", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "WSAA Token",
                "verbose_name_plural": "WSAA Tokens",
                "db_table": "fiscal_auth_token",
                "ordering": ["tax_id"],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sale_id", models.CharField(db_index=True, max_length=64)),
                ("branch_id", models.CharField(max_length=64)),
                ("tax_id", models.CharField(help_text="Issuer CUIT at issuance time", max_length=11)),
                (
                    "voucher_type",
                    models.CharField(choices=[("A", "Factura A"), ("B", "Factura B")], max_length=1),
                ),
                ("point_of_sale", models.PositiveIntegerField()),
                (
                    "invoice_number",
                    models.PositiveIntegerField(default=0, help_text="Assigned by AFIP; 0 until completed"),
                ),
                ("issue_date", models.DateField(default=django.utils.timezone.localdate)),
                (
                    "cae",
                    models.CharField(blank=True, help_text="Código de Autorización Electrónico", max_length=14),
                ),
                ("cae_due_date", models.DateField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("error", models.TextField(blank=True)),
                (
                    "error_kind",
                    models.CharField(blank=True, help_text="Exception class of the last failure", max_length=50),
                ),
                ("protocol_log", models.TextField(blank=True)),
                ("authority_response", models.JSONField(blank=True, default=dict)),
                ("qr_url", models.TextField(blank=True)),
                ("qr_image", models.TextField(blank=True, help_text="PNG data URI")),
                ("total", models.DecimalField(decimal_places=2, max_digits=14)),
                (
                    "net_amount",
                    models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=14),
                ),
                (
                    "tax_amount",
                    models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=14),
                ),
                ("vat_rate", models.DecimalField(decimal_places=2, default=decimal.Decimal("21"), max_digits=5)),
                ("buyer_tax_id", models.CharField(blank=True, max_length=11)),
                ("line_items", models.JSONField(blank=True, default=list)),
                ("auto_retry_count", models.PositiveIntegerField(default=0)),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "db_table": "fiscal_invoice",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        condition=models.Q(("status", "error")),
                        fields=["status", "next_retry_at"],
                        name="fiscal_invoice_retry_idx",
                    ),
                    models.Index(fields=["status", "updated_at"], name="fiscal_invoice_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "error"), _negated=True),
                        fields=("sale_id",),
                        name="unique_open_invoice_per_sale",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RetryAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "user_id",
                    models.CharField(
                        help_text="Requesting user, or 'system' for automatic retries",
                        max_length=64,
                    ),
                ),
                (
                    "previous_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("error", "Error"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "result",
                    models.CharField(choices=[("succeeded", "Succeeded"), ("failed", "Failed")], max_length=20),
                ),
                ("automatic", models.BooleanField(default=False)),
                ("started_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField()),
                ("error", models.TextField(blank=True)),
                ("protocol_log", models.TextField(blank=True)),
                ("cae", models.CharField(blank=True, max_length=14)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="retry_attempts",
                        to="fiscal.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name": "Retry Attempt",
                "verbose_name_plural": "Retry Attempts",
                "db_table": "fiscal_retry_attempt",
                "ordering": ["-started_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="Contingency",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField()),
                (
                    "origin",
                    models.CharField(choices=[("invoicing", "Invoicing")], default="invoicing", max_length=20),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("in_review", "In Review"),
                            ("resolved", "Resolved"),
                            ("rejected", "Rejected"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("response", models.TextField(blank=True)),
                ("created_by", models.CharField(default="system", max_length=64)),
                ("resolved_by", models.CharField(blank=True, max_length=64)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="contingencies",
                        to="fiscal.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name": "Contingency",
                "verbose_name_plural": "Contingencies",
                "db_table": "fiscal_contingency",
                "ordering": ["-created_at"],
            },
        ),
    ]
