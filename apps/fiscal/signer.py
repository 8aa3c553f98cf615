"""
WSAA login ticket construction and CMS signing.

The login ticket request (TRA) is a small XML document naming the service and
a validity window. WSAA only accepts it wrapped in a CMS SignedData envelope
produced with the taxpayer's certificate and private key.
"""

from __future__ import annotations

import binascii
import logging
import secrets
from datetime import datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from django.utils import timezone
from lxml import etree

from .exceptions import CertificateError
from .settings import LOGIN_TICKET_VERSION, WSFE_SERVICE_NAME, b64decode_strict

logger = logging.getLogger(__name__)

TICKET_BACKDATE = timedelta(seconds=60)
TICKET_LIFETIME = timedelta(minutes=10)


def _format_time(value: datetime) -> str:
    return timezone.localtime(value).isoformat(timespec="seconds")


class CertificateSigner:
    """
    Signs login tickets for one tax id.

    Built from base64-encoded PEM blocks. All decoding happens in the
    constructor, so a broken certificate fails at startup rather than on
    the first sale.
    """

    def __init__(self, cert_b64: bytes | str, key_b64: bytes | str) -> None:
        cert_pem = self._decode(cert_b64, "certificate", b"-----BEGIN CERTIFICATE-----")
        key_pem = self._decode(key_b64, "private key", b"PRIVATE KEY-----")

        try:
            self._certificate = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise CertificateError(f"Certificate could not be parsed: {e}") from e

        try:
            self._private_key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Private key could not be parsed: {e}") from e

        if self._public_der(self._certificate.public_key()) != self._public_der(self._private_key.public_key()):
            raise CertificateError("Private key does not match certificate")

    @staticmethod
    def _decode(value: bytes | str, label: str, marker: bytes) -> bytes:
        if not value:
            raise CertificateError(f"Missing {label}")
        try:
            pem = b64decode_strict(value)
        except (binascii.Error, ValueError) as e:
            raise CertificateError(f"The {label} is not valid base64") from e
        if marker not in pem:
            raise CertificateError(f"The {label} is not a PEM block")
        return pem

    @staticmethod
    def _public_der(public_key: object) -> bytes:
        return public_key.public_bytes(  # type: ignore[attr-defined]
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def certificate(self) -> x509.Certificate:
        return self._certificate

    @property
    def not_valid_after(self) -> datetime:
        return self._certificate.not_valid_after_utc

    @property
    def subject(self) -> str:
        return self._certificate.subject.rfc4514_string()

    # --- Ticket ---

    def build_ticket_request(
        self,
        unique_id: int,
        generation_time: datetime,
        expiration_time: datetime,
        service: str = WSFE_SERVICE_NAME,
    ) -> bytes:
        """loginTicketRequest XML for the given window."""
        root = etree.Element("loginTicketRequest", version=LOGIN_TICKET_VERSION)
        header = etree.SubElement(root, "header")
        etree.SubElement(header, "uniqueId").text = str(unique_id)
        etree.SubElement(header, "generationTime").text = _format_time(generation_time)
        etree.SubElement(header, "expirationTime").text = _format_time(expiration_time)
        etree.SubElement(root, "service").text = service
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8")

    def sign(
        self,
        unique_id: int,
        generation_time: datetime,
        expiration_time: datetime,
        service: str = WSFE_SERVICE_NAME,
    ) -> bytes:
        """DER CMS SignedData with the ticket embedded (SHA-256, signer certificate included)."""
        ticket = self.build_ticket_request(unique_id, generation_time, expiration_time, service)
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(ticket)
            .add_signer(self._certificate, self._private_key, hashes.SHA256())  # type: ignore[arg-type]
            .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
        )

    def sign_ticket(self, service: str = WSFE_SERVICE_NAME) -> bytes:
        """Sign a fresh ticket valid from one minute ago for ten minutes."""
        now = timezone.now()
        unique_id = secrets.randbits(32)
        logger.debug(f"[WSAA] Signing login ticket {unique_id} for {service}")
        return self.sign(unique_id, now - TICKET_BACKDATE, now + TICKET_LIFETIME, service)
