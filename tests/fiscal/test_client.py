"""
Tests for the AFIP SOAP client.

The HTTP session is a Mock; responses are canned SOAP envelopes.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

import requests
from django.test import SimpleTestCase, override_settings
from django.utils import timezone
from lxml import etree

from apps.fiscal.client import (
    ApprovedAuthorization,
    AuthorizedVoucher,
    InvoicePayload,
    LineItemPayload,
    RejectedAuthorization,
    SoapProtocolClient,
)
from apps.fiscal.exceptions import (
    RETRYABLE_ERROR_KINDS,
    AuthorityRejectionError,
    AuthServiceError,
    IncompleteApprovalError,
    SubmissionUncertainError,
    TransportError,
)
from apps.fiscal.protocol_log import ProtocolLog
from apps.fiscal.settings import FiscalEnvironment, VoucherType
from apps.fiscal.types import AuthToken
from tests.fiscal.helpers import (
    authorization_response,
    dummy_response,
    http_response,
    last_number_error_response,
    last_number_response,
    login_response,
    soap_envelope,
    voucher_lookup_error_response,
    voucher_lookup_response,
)

CREDENTIALS = AuthToken(
    tax_id="20123456789",
    token="secret-token",
    sign="secret-sign",
    expires_at=timezone.now() + timedelta(hours=12),
    generated_at=timezone.now(),
)


def make_payload(**overrides):
    fields = {
        "point_of_sale": 3,
        "voucher_type": VoucherType.B,
        "issue_date": date(2026, 10, 18),
        "doc_type": 99,
        "doc_number": 0,
        "buyer_vat_condition": 5,
        "total": Decimal("1000.00"),
        "net_amount": Decimal("826.45"),
        "tax_amount": Decimal("173.55"),
        "vat_id": 5,
    }
    fields.update(overrides)
    return InvoicePayload(**fields)


class SoapClientTestBase(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.client = SoapProtocolClient(environment=FiscalEnvironment.HOMOLOGATION, timeout=7, session=self.session)

    def posted_value(self, name, index=-1):
        """Text of the first element called ``name`` in a posted envelope, whatever its prefix."""
        envelope = etree.fromstring(self.session.post.call_args_list[index].kwargs["data"])
        found = envelope.xpath(f".//*[local-name()='{name}']")
        if not found:
            return None
        return found[0].text


class TransportTestCase(SoapClientTestBase):
    """Failures below the SOAP layer are TransportError."""

    def test_timeout(self):
        self.session.post.side_effect = requests.Timeout("read timed out")

        with self.assertRaisesRegex(TransportError, "timeout after 7s"):
            self.client.get_server_status()

    def test_connection_error(self):
        self.session.post.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaisesRegex(TransportError, "network error"):
            self.client.get_server_status()

    def test_non_2xx_status(self):
        fault = soap_envelope("<soap:Fault><faultstring>Server was unable to process</faultstring></soap:Fault>")
        self.session.post.return_value = http_response(fault, status_code=500)

        with self.assertRaises(TransportError) as ctx:
            self.client.get_server_status()
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertTrue(ctx.exception.retryable)

    def test_non_xml_content_type(self):
        self.session.post.return_value = http_response("<html>maintenance</html>", content_type="text/html")

        with self.assertRaisesRegex(TransportError, "expected XML"):
            self.client.get_server_status()

    def test_malformed_xml(self):
        self.session.post.return_value = http_response("<soap:Envelope><unclosed>")

        with self.assertRaisesRegex(TransportError, "malformed XML"):
            self.client.get_server_status()

    def test_missing_operation_result(self):
        self.session.post.return_value = http_response(soap_envelope("<Other/>"))

        with self.assertRaisesRegex(TransportError, "no FEDummyResult"):
            self.client.get_server_status()

    def test_request_uses_timeout_and_soap_action(self):
        self.session.post.return_value = dummy_response()

        self.client.get_server_status()

        call = self.session.post.call_args
        self.assertEqual(call.args[0], FiscalEnvironment.HOMOLOGATION.wsfe_url)
        self.assertEqual(call.kwargs["timeout"], 7)
        self.assertEqual(call.kwargs["headers"]["SOAPAction"], '"http://ar.gov.afip.dif.FEV1/FEDummy"')

    def test_failure_is_written_to_protocol_log(self):
        self.session.post.return_value = http_response("oops", status_code=503, content_type="text/plain")
        log = ProtocolLog()

        with self.assertRaises(TransportError):
            self.client.get_server_status(log)

        rendered = log.render()
        self.assertIn(">>> FEDummy", rendered)
        self.assertIn("<<< FEDummy HTTP 503", rendered)
        self.assertIn("!!! FEDummy: HTTP 503", rendered)


class LoginTestCase(SoapClientTestBase):
    def test_login_parses_ticket_response(self):
        self.session.post.return_value = login_response()

        result = self.client.login(b"cms-bytes")

        self.assertEqual(result.token, "secret-token")
        self.assertEqual(result.sign, "secret-sign")
        self.assertEqual(result.expiration_time, datetime.fromisoformat("2026-10-18T22:00:00.000-03:00"))
        self.assertEqual(self.session.post.call_args.args[0], FiscalEnvironment.HOMOLOGATION.wsaa_url)
        self.assertEqual(self.posted_value("in0"), "Y21zLWJ5dGVz")

    def test_login_without_return(self):
        body = '<loginCmsResponse xmlns="http://wsaa.view.sua.dvadac.desein.afip.gov"/>'
        self.session.post.return_value = http_response(soap_envelope(body))

        with self.assertRaisesRegex(AuthServiceError, "no loginCmsReturn"):
            self.client.login(b"cms")

    def test_login_ticket_without_sign(self):
        self.session.post.return_value = login_response(sign="")

        with self.assertRaisesRegex(AuthServiceError, "missing token, sign or expirationTime"):
            self.client.login(b"cms")

    def test_login_ticket_with_bad_timestamp(self):
        self.session.post.return_value = login_response(expiration="tomorrow")

        with self.assertRaisesRegex(AuthServiceError, "invalid timestamp"):
            self.client.login(b"cms")

    def test_protocol_log_masks_credentials(self):
        self.session.post.return_value = login_response()
        log = ProtocolLog()

        self.client.login(b"cms", log)
        self.session.post.return_value = last_number_response(7)
        self.client.get_last_invoice_number(CREDENTIALS, 3, VoucherType.B, log)

        rendered = log.render()
        self.assertNotIn("secret-token", rendered)
        self.assertNotIn("secret-sign", rendered)
        self.assertIn("***", rendered)


class LastInvoiceNumberTestCase(SoapClientTestBase):
    def test_returns_number(self):
        self.session.post.return_value = last_number_response(41)

        number = self.client.get_last_invoice_number(CREDENTIALS, 3, VoucherType.B)

        self.assertEqual(number, 41)
        self.assertEqual(self.posted_value("PtoVta"), "3")
        self.assertEqual(self.posted_value("CbteTipo"), "6")
        self.assertEqual(self.posted_value("Cuit"), "20123456789")

    def test_voucher_a_code(self):
        self.session.post.return_value = last_number_response(0, voucher_code=1)

        self.client.get_last_invoice_number(CREDENTIALS, 3, "A")

        self.assertEqual(self.posted_value("CbteTipo"), "1")

    def test_errors_raise_rejection(self):
        self.session.post.return_value = last_number_error_response(code="600")

        with self.assertRaises(AuthorityRejectionError) as ctx:
            self.client.get_last_invoice_number(CREDENTIALS, 3, VoucherType.B)
        self.assertEqual(ctx.exception.codes, ["600"])
        self.assertFalse(ctx.exception.retryable)


class RequestAuthorizationTestCase(SoapClientTestBase):
    def test_number_is_last_authorized_plus_one(self):
        self.session.post.side_effect = [last_number_response(41), authorization_response(42)]

        response = self.client.request_invoice_authorization(CREDENTIALS, make_payload())

        self.assertIsInstance(response, ApprovedAuthorization)
        self.assertEqual(response.invoice_number, 42)
        self.assertEqual(response.cae, "76123456789012")
        self.assertEqual(response.cae_due_date, date(2026, 10, 28))
        self.assertEqual(self.session.post.call_count, 2)
        self.assertEqual(self.posted_value("CbteDesde"), "42")
        self.assertEqual(self.posted_value("CbteHasta"), "42")

    def test_explicit_number_skips_lookup(self):
        self.session.post.return_value = authorization_response(10)

        self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=10))

        self.assertEqual(self.session.post.call_count, 1)

    def test_detail_fields(self):
        self.session.post.return_value = authorization_response(1)

        self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=1))

        expected = {
            "CantReg": "1",
            "Concepto": "1",
            "DocTipo": "99",
            "DocNro": "0",
            "CbteFch": "20261018",
            "ImpTotal": "1000.00",
            "ImpNeto": "826.45",
            "ImpIVA": "173.55",
            "MonId": "PES",
            "CondicionIVAReceptorId": "5",
            "Id": "5",
            "BaseImp": "826.45",
        }
        for name, value in expected.items():
            self.assertEqual(self.posted_value(name), value, name)
        self.assertIsNone(self.posted_value("Items"))

    @override_settings(FISCAL_SEND_LINE_ITEMS=True)
    def test_line_items_sent_when_enabled(self):
        self.session.post.return_value = authorization_response(1)
        item = LineItemPayload(
            description="Yerba mate 1kg",
            quantity=Decimal("2"),
            unit_price=Decimal("247.93"),
            bonus=Decimal("0.00"),
            subtotal=Decimal("495.86"),
        )

        self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=1, line_items=[item]))

        self.assertEqual(self.posted_value("Descripcion"), "Yerba mate 1kg")
        self.assertEqual(self.posted_value("PrecioUnitario"), "247.93")

    def test_rejection_with_observations(self):
        self.session.post.return_value = authorization_response(
            42, result="R", observations=[("10015", "Factura B: DocTipo invalido")]
        )

        response = self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=42))

        self.assertIsInstance(response, RejectedAuthorization)
        self.assertFalse(response.approved)
        self.assertEqual(response.observations, [{"code": "10015", "msg": "Factura B: DocTipo invalido"}])
        self.assertIn("10015", response.message)
        self.assertIn("FECAESolicitarResult", response.raw)

    def test_approved_without_cae_keeps_the_number(self):
        self.session.post.return_value = authorization_response(42, cae="")

        with self.assertRaises(IncompleteApprovalError) as ctx:
            self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=42))

        self.assertEqual(ctx.exception.invoice_number, 42)
        self.assertIn("number 42 without CAE", str(ctx.exception))
        self.assertFalse(ctx.exception.retryable)

    def test_approved_with_invalid_due_date(self):
        self.session.post.return_value = authorization_response(42, due="28/10/2026")

        with self.assertRaisesRegex(IncompleteApprovalError, "invalid CAEFchVto '28/10/2026'"):
            self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=42))

    def test_timeout_after_submission_is_uncertain(self):
        self.session.post.side_effect = [last_number_response(41), requests.Timeout("read timed out")]

        with self.assertRaises(SubmissionUncertainError) as ctx:
            self.client.request_invoice_authorization(CREDENTIALS, make_payload())

        self.assertEqual(ctx.exception.invoice_number, 42)
        self.assertIsInstance(ctx.exception.__cause__, TransportError)
        self.assertFalse(ctx.exception.retryable)
        self.assertNotIn(ctx.exception.kind, RETRYABLE_ERROR_KINDS)

    def test_server_error_after_submission_is_uncertain(self):
        self.session.post.return_value = http_response("Bad gateway", status_code=502, content_type="text/plain")

        with self.assertRaises(SubmissionUncertainError) as ctx:
            self.client.request_invoice_authorization(CREDENTIALS, make_payload(invoice_number=10))

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("number 10 may have been authorized", str(ctx.exception))

    def test_timeout_on_number_lookup_is_a_plain_transport_error(self):
        self.session.post.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(TransportError) as ctx:
            self.client.request_invoice_authorization(CREDENTIALS, make_payload())

        self.assertNotIsInstance(ctx.exception, SubmissionUncertainError)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.session.post.call_count, 1)

    def test_lookup_errors_propagate(self):
        self.session.post.return_value = last_number_error_response()

        with self.assertRaises(AuthorityRejectionError):
            self.client.request_invoice_authorization(CREDENTIALS, make_payload())


class InvoiceLookupTestCase(SoapClientTestBase):
    def test_authorized_voucher(self):
        self.session.post.return_value = voucher_lookup_response(42, total="1000.00")

        voucher = self.client.get_invoice(CREDENTIALS, 3, VoucherType.B, 42)

        self.assertIsInstance(voucher, AuthorizedVoucher)
        self.assertEqual(voucher.invoice_number, 42)
        self.assertEqual(voucher.cae, "76123456789012")
        self.assertEqual(voucher.cae_due_date, date(2026, 10, 28))
        self.assertEqual(voucher.total, Decimal("1000.00"))
        self.assertEqual(voucher.doc_number, 0)
        self.assertEqual(voucher.to_authorization().cae, "76123456789012")
        self.assertEqual(self.posted_value("CbteNro"), "42")
        self.assertEqual(self.posted_value("CbteTipo"), "6")
        self.assertEqual(self.posted_value("PtoVta"), "3")

    def test_unknown_number(self):
        self.session.post.return_value = voucher_lookup_error_response()

        self.assertIsNone(self.client.get_invoice(CREDENTIALS, 3, VoucherType.B, 42))

    def test_voucher_without_approval(self):
        self.session.post.return_value = voucher_lookup_response(42, result="R", cae="")

        self.assertIsNone(self.client.get_invoice(CREDENTIALS, 3, VoucherType.B, 42))

    def test_other_errors_raise(self):
        self.session.post.return_value = voucher_lookup_error_response("600", "ValidacionDeToken")

        with self.assertRaises(AuthorityRejectionError) as ctx:
            self.client.get_invoice(CREDENTIALS, 3, VoucherType.B, 42)
        self.assertEqual(ctx.exception.codes, ["600"])


class ServerStatusTestCase(SoapClientTestBase):
    def test_all_ok(self):
        self.session.post.return_value = dummy_response()

        status = self.client.get_server_status()

        self.assertTrue(status.is_ok)

    def test_degraded(self):
        self.session.post.return_value = dummy_response(db="DOWN")

        self.assertFalse(self.client.get_server_status().is_ok)
