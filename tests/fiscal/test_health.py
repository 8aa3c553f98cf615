"""
Tests for the AFIP integration health report.
"""

from datetime import timedelta
from unittest.mock import Mock

from django.test import SimpleTestCase
from django.utils import timezone

from apps.fiscal.client import ServerStatus
from apps.fiscal.exceptions import CertificateError, TransportError
from apps.fiscal.health import FiscalHealthCheck
from apps.fiscal.signer import CertificateSigner
from tests.fiscal.fakes import FakeTaxConfiguration
from tests.fiscal.helpers import certificate_b64


class FiscalHealthCheckTestCase(SimpleTestCase):
    def setUp(self):
        self.repository = Mock()
        self.repository.list_active_tax_configurations.return_value = [
            FakeTaxConfiguration("central", "20123456789", 3),
        ]
        self.tokens = Mock()
        self.tokens.token_status.return_value = {"total": 1, "valid": 1, "expired": 0, "tokens": []}
        self.client = Mock()
        self.client.get_server_status.return_value = ServerStatus(app_server="OK", db_server="OK", auth_server="OK")
        self.client.get_last_invoice_number.return_value = 41
        self.signers = {"20123456789": CertificateSigner(*certificate_b64(days=365))}
        self.health = FiscalHealthCheck(self.repository, self.tokens, self.client, lambda: self.signers)

    def test_healthy_report(self):
        report = self.health.run()

        self.assertTrue(report["healthy"])
        self.assertEqual(report["environment"], "homologation")
        self.assertEqual(report["server"], {"ok": True, "app_server": "OK", "db_server": "OK", "auth_server": "OK"})
        self.assertEqual(report["tokens"]["valid"], 1)
        self.assertNotIn("last_numbers", report)

        certificate = report["certificates"]["certificates"][0]
        self.assertEqual(certificate["tax_id"], "20123456789")
        self.assertIn("CN=fiscal-test", certificate["subject"])
        self.assertIn(certificate["days_left"], (364, 365))
        self.assertFalse(certificate["expiring_soon"])

    def test_server_failure(self):
        self.client.get_server_status.side_effect = TransportError("FEDummy: timeout after 10s")

        report = self.health.run()

        self.assertFalse(report["healthy"])
        self.assertEqual(report["server"], {"ok": False, "error": "TransportError: FEDummy: timeout after 10s"})

    def test_server_degraded(self):
        self.client.get_server_status.return_value = ServerStatus(app_server="OK", db_server="DOWN", auth_server="OK")

        self.assertFalse(self.health.run()["healthy"])

    def test_certificate_close_to_expiry_is_flagged(self):
        self.signers["20123456789"] = CertificateSigner(*certificate_b64(days=10))

        result = self.health.check_certificates()

        self.assertTrue(result["ok"])
        self.assertTrue(result["certificates"][0]["expiring_soon"])

    def test_broken_certificate(self):
        self.signers["30712345678"] = CertificateError("Certificate is not valid base64")

        result = self.health.check_certificates()

        self.assertFalse(result["ok"])
        broken = [c for c in result["certificates"] if c["tax_id"] == "30712345678"][0]
        self.assertEqual(broken, {"tax_id": "30712345678", "ok": False, "error": "Certificate is not valid base64"})

    def test_no_certificates_is_unhealthy(self):
        self.signers.clear()

        self.assertFalse(self.health.check_certificates()["ok"])

    def test_last_numbers_per_point_of_sale(self):
        self.tokens.get_valid_token.return_value = Mock(expires_at=timezone.now() + timedelta(hours=10))

        report = self.health.run(include_numbers=True)

        self.assertTrue(report["healthy"])
        entry = report["last_numbers"]["points_of_sale"][0]
        self.assertEqual(entry["point_of_sale"], 3)
        self.assertEqual(entry["A"], 41)
        self.assertEqual(entry["B"], 41)
        self.assertTrue(entry["ok"])

    def test_last_numbers_token_failure(self):
        self.tokens.get_valid_token.side_effect = CertificateError("No certificate configured for 20123456789")

        result = self.health.check_last_numbers()

        self.assertFalse(result["ok"])
        self.assertIn("CertificateError", result["points_of_sale"][0]["error"])
