"""
Tests for fiscal admin actions.
"""

from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

from django.contrib.admin.sites import AdminSite
from django.test import RequestFactory, TestCase

from apps.fiscal.admin import ContingencyAdmin, InvoiceAdmin
from apps.fiscal.exceptions import AlreadyIssuedError
from apps.fiscal.models import Contingency, Invoice, InvoiceStatus


def make_request(user_pk=42):
    request = RequestFactory().post("/admin/")
    request.user = Mock(pk=user_pk)
    return request


class InvoiceAdminTestCase(TestCase):
    def setUp(self):
        self.admin = InvoiceAdmin(Invoice, AdminSite())
        self.admin.message_user = Mock()
        self.invoice = Invoice.objects.create(
            sale_id="S-1001",
            branch_id="central",
            tax_id="20123456789",
            voucher_type="B",
            point_of_sale=3,
            total=Decimal("1000.00"),
            status=InvoiceStatus.ERROR.value,
        )

    @patch("apps.fiscal.admin.get_registry")
    def test_retry_action(self, mock_get_registry):
        registry = MagicMock()
        registry.retries.retry.return_value.succeeded = True
        mock_get_registry.return_value = registry

        self.admin.retry_authorization(make_request(), Invoice.objects.all())

        registry.retries.retry.assert_called_once_with(self.invoice.pk, "42")
        self.assertIn("1 invoice(s) authorized", self.admin.message_user.call_args.args[1])

    @patch("apps.fiscal.admin.get_registry")
    def test_retry_action_reports_refusals(self, mock_get_registry):
        registry = MagicMock()
        registry.retries.retry.side_effect = AlreadyIssuedError("already completed")
        mock_get_registry.return_value = registry

        self.admin.retry_authorization(make_request(), Invoice.objects.all())

        self.assertIn("S-1001: already completed", self.admin.message_user.call_args.args[1])

    def test_display_helpers(self):
        self.assertEqual(self.admin.number_display(self.invoice), "-")
        self.assertIn("Error", self.admin.status_badge(self.invoice))
        self.assertEqual(self.admin.qr_preview(self.invoice), "-")
        self.assertFalse(self.admin.has_add_permission(make_request()))


class ContingencyAdminTestCase(TestCase):
    def setUp(self):
        self.admin = ContingencyAdmin(Contingency, AdminSite())
        self.admin.message_user = Mock()

    def test_review_and_resolve(self):
        contingency = Contingency.objects.create(title="Invoice failed for sale S-1", description="x")

        self.admin.start_review(make_request(), Contingency.objects.all())
        self.admin.mark_resolved(make_request(), Contingency.objects.all())

        contingency.refresh_from_db()
        self.assertEqual(contingency.status, "resolved")
        self.assertEqual(contingency.resolved_by, "42")
        self.assertEqual(contingency.response, "Resolved from admin")

    def test_closed_contingency_is_reported(self):
        Contingency.objects.create(title="t", description="x", status="rejected")

        self.admin.mark_resolved(make_request(), Contingency.objects.all())

        self.assertEqual(self.admin.message_user.call_args.args[1], "0 contingency(ies) resolved")
