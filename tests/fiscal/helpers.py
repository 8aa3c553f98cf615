"""
Shared builders for fiscal tests: self-signed certificates and canned AFIP responses.
"""

import base64
import functools
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from unittest.mock import Mock
from xml.sax.saxutils import escape

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

WSFE_NS = "http://ar.gov.afip.dif.FEV1/"


# ===============================================================================
# CERTIFICATES
# ===============================================================================


@functools.lru_cache(maxsize=4)
def _private_key(seed: int = 0) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_certificate(common_name: str = "fiscal-test", days: int = 365, seed: int = 0) -> tuple[bytes, bytes]:
    """Self-signed certificate and matching unencrypted private key, both PEM."""
    key = _private_key(seed)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "CUIT 20123456789"),
        ]
    )
    now = datetime.now(dt_timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def certificate_b64(common_name: str = "fiscal-test", days: int = 365, seed: int = 0) -> tuple[str, str]:
    cert_pem, key_pem = make_certificate(common_name, days, seed)
    return b64(cert_pem), b64(key_pem)


# ===============================================================================
# HTTP / SOAP RESPONSES
# ===============================================================================


def http_response(body: str, status_code: int = 200, content_type: str = "text/xml; charset=utf-8") -> Mock:
    response = Mock()
    response.status_code = status_code
    response.text = body
    response.content = body.encode("utf-8")
    response.headers = {"Content-Type": content_type}
    return response


def soap_envelope(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        f"<soap:Body>{body}</soap:Body>"
        "</soap:Envelope>"
    )


def login_response(
    token: str = "secret-token",
    sign: str = "secret-sign",
    generation: str = "2026-10-18T10:00:00.000-03:00",
    expiration: str = "2026-10-18T22:00:00.000-03:00",
) -> Mock:
    ticket = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<loginTicketResponse version="1.0">'
        "<header><source>CN=wsaahomo</source><destination>SERIALNUMBER=CUIT 20123456789</destination>"
        f"<uniqueId>123</uniqueId><generationTime>{generation}</generationTime>"
        f"<expirationTime>{expiration}</expirationTime></header>"
        f"<credentials><token>{token}</token><sign>{sign}</sign></credentials>"
        "</loginTicketResponse>"
    )
    body = (
        '<loginCmsResponse xmlns="http://wsaa.view.sua.dvadac.desein.afip.gov">'
        f"<loginCmsReturn>{escape(ticket)}</loginCmsReturn>"
        "</loginCmsResponse>"
    )
    return http_response(soap_envelope(body))


def last_number_response(number: int, point_of_sale: int = 3, voucher_code: int = 6) -> Mock:
    body = (
        f'<FECompUltimoAutorizadoResponse xmlns="{WSFE_NS}"><FECompUltimoAutorizadoResult>'
        f"<PtoVta>{point_of_sale}</PtoVta><CbteTipo>{voucher_code}</CbteTipo><CbteNro>{number}</CbteNro>"
        "</FECompUltimoAutorizadoResult></FECompUltimoAutorizadoResponse>"
    )
    return http_response(soap_envelope(body))


def last_number_error_response(code: str = "600", msg: str = "ValidacionDeToken: No validaron las firmas") -> Mock:
    body = (
        f'<FECompUltimoAutorizadoResponse xmlns="{WSFE_NS}"><FECompUltimoAutorizadoResult>'
        "<PtoVta>0</PtoVta><CbteTipo>0</CbteTipo><CbteNro>0</CbteNro>"
        f"<Errors><Err><Code>{code}</Code><Msg>{msg}</Msg></Err></Errors>"
        "</FECompUltimoAutorizadoResult></FECompUltimoAutorizadoResponse>"
    )
    return http_response(soap_envelope(body))


def authorization_response(
    number: int,
    result: str = "A",
    cae: str = "76123456789012",
    due: str = "20261028",
    observations: list[tuple[str, str]] | None = None,
) -> Mock:
    obs = ""
    if observations:
        items = "".join(f"<Obs><Code>{code}</Code><Msg>{msg}</Msg></Obs>" for code, msg in observations)
        obs = f"<Observaciones>{items}</Observaciones>"
    if result == "A":
        cae_fields = f"<CAE>{cae}</CAE><CAEFchVto>{due}</CAEFchVto>"
    else:
        cae_fields = "<CAE></CAE><CAEFchVto></CAEFchVto>"
    body = (
        f'<FECAESolicitarResponse xmlns="{WSFE_NS}"><FECAESolicitarResult>'
        f"<FeCabResp><Cuit>20123456789</Cuit><PtoVta>3</PtoVta><CbteTipo>6</CbteTipo>"
        f"<FchProceso>20261018103000</FchProceso><CantReg>1</CantReg><Resultado>{result}</Resultado></FeCabResp>"
        "<FeDetResp><FECAEDetResponse>"
        f"<Concepto>1</Concepto><DocTipo>99</DocTipo><DocNro>0</DocNro>"
        f"<CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta><CbteFch>20261018</CbteFch>"
        f"<Resultado>{result}</Resultado>{obs}{cae_fields}"
        "</FECAEDetResponse></FeDetResp>"
        "</FECAESolicitarResult></FECAESolicitarResponse>"
    )
    return http_response(soap_envelope(body))


def dummy_response(app: str = "OK", db: str = "OK", auth: str = "OK") -> Mock:
    body = (
        f'<FEDummyResponse xmlns="{WSFE_NS}"><FEDummyResult>'
        f"<AppServer>{app}</AppServer><DbServer>{db}</DbServer><AuthServer>{auth}</AuthServer>"
        "</FEDummyResult></FEDummyResponse>"
    )
    return http_response(soap_envelope(body))


def voucher_lookup_response(
    number: int,
    total: str = "1000.00",
    doc_number: int = 0,
    result: str = "A",
    cae: str = "76123456789012",
    due: str = "20261028",
) -> Mock:
    body = (
        f'<FECompConsultarResponse xmlns="{WSFE_NS}"><FECompConsultarResult><ResultGet>'
        f"<Concepto>1</Concepto><DocTipo>99</DocTipo><DocNro>{doc_number}</DocNro>"
        f"<CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta><CbteFch>20261018</CbteFch>"
        f"<ImpTotal>{total}</ImpTotal><Resultado>{result}</Resultado>"
        f"<CodAutorizacion>{cae}</CodAutorizacion><EmisionTipo>CAE</EmisionTipo><FchVto>{due}</FchVto>"
        "<PtoVta>3</PtoVta><CbteTipo>6</CbteTipo>"
        "</ResultGet></FECompConsultarResult></FECompConsultarResponse>"
    )
    return http_response(soap_envelope(body))


def voucher_lookup_error_response(code: str = "602", msg: str = "No existen datos en nuestros registros") -> Mock:
    body = (
        f'<FECompConsultarResponse xmlns="{WSFE_NS}"><FECompConsultarResult>'
        f"<Errors><Err><Code>{code}</Code><Msg>{msg}</Msg></Err></Errors>"
        "</FECompConsultarResult></FECompConsultarResponse>"
    )
    return http_response(soap_envelope(body))
