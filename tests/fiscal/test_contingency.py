"""
Tests for the contingency workflow and protocol log.
"""

from decimal import Decimal

from django.test import SimpleTestCase, TestCase, override_settings

from apps.fiscal.contingency import ContingencyService
from apps.fiscal.exceptions import InvalidTransitionError
from apps.fiscal.models import Contingency, Invoice, InvoiceStatus
from apps.fiscal.protocol_log import TRUNCATION_MARKER, ProtocolLog, mask_credentials
from apps.fiscal.repository import DjangoFiscalRepository


class ContingencyServiceTestCase(TestCase):
    def setUp(self):
        self.service = ContingencyService(DjangoFiscalRepository())
        self.invoice = self.make_invoice("S-1001")

    def make_invoice(self, sale_id):
        return Invoice.objects.create(
            sale_id=sale_id,
            branch_id="central",
            tax_id="20123456789",
            voucher_type="B",
            point_of_sale=3,
            total=Decimal("1000.00"),
            status=InvoiceStatus.ERROR.value,
        )

    def test_raise_for_invoice(self):
        contingency = self.service.raise_for_invoice(self.invoice, "timeout after 10s", "TransportError")

        self.assertEqual(contingency.invoice, self.invoice)
        self.assertEqual(contingency.origin, "invoicing")
        self.assertEqual(contingency.created_by, "system")
        self.assertIn("TransportError: timeout after 10s", contingency.description)
        self.assertEqual(contingency.metadata["sale_id"], "S-1001")
        self.assertEqual(contingency.metadata["total"], "1000.00")
        self.assertEqual(contingency.metadata["failures"], 1)

    def test_repeated_failure_updates_the_open_contingency(self):
        first = self.service.raise_for_invoice(self.invoice, "timeout after 10s", "TransportError")
        ContingencyService.start_review(first, "42")

        second = self.service.raise_for_invoice(self.invoice, "10015: DocTipo invalido", "AuthorityRejectionError")

        self.assertEqual(second.pk, first.pk)
        self.assertEqual(Contingency.objects.filter(invoice=self.invoice).count(), 1)
        second.refresh_from_db()
        self.assertEqual(second.status, "in_review")
        self.assertEqual(second.metadata["failures"], 2)
        self.assertEqual(second.metadata["error_kind"], "AuthorityRejectionError")
        self.assertEqual(second.metadata["raised_at"], first.metadata["raised_at"])
        self.assertIn("AuthorityRejectionError: 10015: DocTipo invalido", second.description)

    def test_failure_after_resolution_opens_a_new_contingency(self):
        first = self.service.raise_for_invoice(self.invoice, "a", "TransportError")
        ContingencyService.resolve(first, "Checked", "42")

        second = self.service.raise_for_invoice(self.invoice, "b", "TransportError")

        self.assertNotEqual(second.pk, first.pk)
        self.assertEqual(second.metadata["failures"], 1)

    def test_review_then_resolve(self):
        contingency = self.service.raise_for_invoice(self.invoice, "rejected", "AuthorityRejectionError")

        ContingencyService.start_review(contingency, "42")
        ContingencyService.resolve(contingency, "Issued manually", "42")

        contingency.refresh_from_db()
        self.assertEqual(contingency.status, "resolved")
        self.assertEqual(contingency.response, "Issued manually")
        self.assertEqual(ContingencyService.open_contingencies(), [])

    def test_review_requires_pending(self):
        contingency = self.service.raise_for_invoice(self.invoice, "rejected", "AuthorityRejectionError")
        ContingencyService.reject(contingency, "Duplicate", "42")

        with self.assertRaises(InvalidTransitionError):
            ContingencyService.start_review(contingency, "42")

    def test_open_contingencies(self):
        first = self.service.raise_for_invoice(self.invoice, "a", "TransportError")
        second = self.service.raise_for_invoice(self.make_invoice("S-1002"), "b", "TransportError")
        ContingencyService.start_review(second, "42")
        Contingency.objects.create(title="closed", description="x", status="resolved")

        self.assertEqual({c.pk for c in ContingencyService.open_contingencies()}, {first.pk, second.pk})


class ProtocolLogTestCase(SimpleTestCase):
    def test_mask_plain_and_escaped_credentials(self):
        text = "<ar:Token>abc</ar:Token><Sign>def</Sign> &lt;token&gt;ghi&lt;/token&gt;"

        masked = mask_credentials(text)

        for secret in ("abc", "def", "ghi"):
            self.assertNotIn(secret, masked)
        self.assertIn("<ar:Token>***</ar:Token>", masked)

    def test_lines_are_timestamped(self):
        log = ProtocolLog()
        log.request("FEDummy", "<body/>")
        log.error("boom")

        rendered = log.render()

        self.assertEqual(len(log), 2)
        self.assertIn(">>> FEDummy", rendered)
        self.assertRegex(rendered, r"^\[\d{2}:\d{2}:\d{2}\.\d{3}\]")

    @override_settings(FISCAL_PROTOCOL_LOG_MAX_CHARS=100)
    def test_render_truncates(self):
        log = ProtocolLog()
        log.add("x" * 500)

        rendered = log.render()

        self.assertEqual(len(rendered), 100)
        self.assertTrue(rendered.endswith(TRUNCATION_MARKER))
