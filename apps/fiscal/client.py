"""
AFIP SOAP client for WSAA and WSFEv1.

This client handles all communication with AFIP:
- WSAA loginCms: exchange a signed login ticket for token + sign
- WSFEv1 FECompUltimoAutorizado: last authorized voucher number
- WSFEv1 FECAESolicitar: request a CAE for one voucher
- WSFEv1 FECompConsultar: look up an authorized voucher by number
- WSFEv1 FEDummy: infrastructure status (no credentials)

Responses are validated here and turned into typed results; callers never
see raw XML.

Reference:
- https://www.afip.gob.ar/ws/documentacion/ws-factura-electronica.asp
- https://www.afip.gob.ar/ws/WSAA/Especificacion_Tecnica_WSAA_1.2.2.pdf
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import requests
from lxml import etree

from .exceptions import (
    AuthorityRejectionError,
    AuthServiceError,
    IncompleteApprovalError,
    SubmissionUncertainError,
    TransportError,
)
from .metrics import metrics
from .protocol_log import ProtocolLog, mask_credentials
from .settings import (
    CONCEPT_GOODS,
    CURRENCY_ID,
    CURRENCY_RATE,
    SOAP_ENV_NAMESPACE,
    WSAA_NAMESPACE,
    WSFE_NAMESPACE,
    FiscalEnvironment,
    VoucherType,
    fiscal_settings,
)
from .types import AuthToken

logger = logging.getLogger(__name__)

# No DTDs, no entities, no network: AFIP responses never need them
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=False)


# ===============================================================================
# TYPED REQUESTS / RESPONSES
# ===============================================================================


@dataclass(frozen=True)
class LoginResult:
    """Credentials returned by WSAA loginCms."""

    token: str
    sign: str
    expiration_time: datetime
    generation_time: datetime


@dataclass(frozen=True)
class LineItemPayload:
    """One voucher line, unit price net of VAT."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    bonus: Decimal
    subtotal: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "bonus": str(self.bonus),
            "subtotal": str(self.subtotal),
        }


@dataclass(frozen=True)
class InvoicePayload:
    """Everything FECAESolicitar needs for one voucher."""

    point_of_sale: int
    voucher_type: VoucherType
    issue_date: date
    doc_type: int
    doc_number: int
    buyer_vat_condition: int
    total: Decimal
    net_amount: Decimal
    tax_amount: Decimal
    vat_id: int
    untaxed_amount: Decimal = Decimal("0.00")
    exempt_amount: Decimal = Decimal("0.00")
    other_taxes: Decimal = Decimal("0.00")
    concept: int = CONCEPT_GOODS
    currency: str = CURRENCY_ID
    currency_rate: int = CURRENCY_RATE
    line_items: list[LineItemPayload] = field(default_factory=list)
    # None: ask WSFEv1 for the last number and use the next one
    invoice_number: int | None = None

    def describe(self) -> str:
        return (
            f"PtoVta {self.point_of_sale} Cbte {self.voucher_type.value} "
            f"Doc {self.doc_type}/{self.doc_number} Total {self.total} "
            f"Neto {self.net_amount} IVA {self.tax_amount} ({len(self.line_items)} items)"
        )


@dataclass(frozen=True)
class ApprovedAuthorization:
    """Resultado A: the voucher has a CAE."""

    invoice_number: int
    cae: str
    cae_due_date: date
    observations: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    approved = True


@dataclass(frozen=True)
class RejectedAuthorization:
    """Resultado R (or top-level errors): no CAE was granted."""

    errors: list[dict[str, Any]] = field(default_factory=list)
    observations: list[dict[str, Any]] = field(default_factory=list)
    invoice_number: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    approved = False

    @property
    def message(self) -> str:
        messages = [f"{e.get('code')}: {e.get('msg')}" for e in self.errors + self.observations]
        return "; ".join(messages) or "Rejected without detail"


AuthorityResponse = ApprovedAuthorization | RejectedAuthorization


@dataclass(frozen=True)
class AuthorizedVoucher:
    """FECompConsultar result for a voucher AFIP has on record with a CAE."""

    invoice_number: int
    cae: str
    cae_due_date: date
    doc_number: int
    total: Decimal
    raw: dict[str, Any] = field(default_factory=dict)

    def to_authorization(self) -> ApprovedAuthorization:
        return ApprovedAuthorization(
            invoice_number=self.invoice_number,
            cae=self.cae,
            cae_due_date=self.cae_due_date,
            raw=self.raw,
        )


# AFIP error code for "no voucher with that number"
NOT_FOUND_CODE = "602"


@dataclass(frozen=True)
class ServerStatus:
    """FEDummy result."""

    app_server: str
    db_server: str
    auth_server: str

    @property
    def is_ok(self) -> bool:
        return all(v.upper() == "OK" for v in (self.app_server, self.db_server, self.auth_server))


# ===============================================================================
# XML HELPERS
# ===============================================================================


def _local(node: etree._Element) -> str:
    return etree.QName(node).localname


def _find(node: etree._Element, name: str) -> etree._Element | None:
    found = node.xpath(f".//*[local-name()='{name}']")
    return found[0] if found else None


def _find_all(node: etree._Element, name: str) -> list[etree._Element]:
    return list(node.xpath(f".//*[local-name()='{name}']"))


def _text(node: etree._Element | None, name: str, default: str = "") -> str:
    if node is None:
        return default
    found = _find(node, name)
    if found is None or found.text is None:
        return default
    return found.text.strip()


def _to_dict(node: etree._Element) -> Any:
    """Namespace-free dict of an element tree, for storage as JSON."""
    children = list(node)
    if not children:
        return (node.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        if not isinstance(child.tag, str):
            continue
        key = _local(child)
        value = _to_dict(child)
        if key in result:
            if not isinstance(result[key], list):
                result[key] = [result[key]]
            result[key].append(value)
        else:
            result[key] = value
    return result


def _code_messages(node: etree._Element | None, container: str, item: str) -> list[dict[str, Any]]:
    if node is None:
        return []
    holder = _find(node, container)
    if holder is None:
        return []
    return [{"code": _text(entry, "Code"), "msg": _text(entry, "Msg")} for entry in _find_all(holder, item)]


def _amount(value: Decimal) -> str:
    return f"{value:.2f}"


def _parse_afip_date(value: str) -> date:
    return datetime.strptime(value, "%Y%m%d").date()


def _voucher_code(voucher_type: VoucherType | str | int) -> int:
    if isinstance(voucher_type, int):
        return voucher_type
    return VoucherType(voucher_type).code


# ===============================================================================
# CLIENT
# ===============================================================================


class SoapProtocolClient:
    """
    SOAP 1.1 client for WSAA and WSFEv1.

    Stateless apart from the HTTP session; safe to share across threads as
    long as the session is.
    """

    def __init__(
        self,
        environment: FiscalEnvironment | None = None,
        timeout: int | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.environment = environment or fiscal_settings.environment
        self.timeout = timeout or fiscal_settings.request_timeout
        self._session = session or requests.Session()

    # --- Transport ---

    def _envelope(self, body: etree._Element, nsmap: dict[str, str]) -> bytes:
        envelope = etree.Element(
            etree.QName(SOAP_ENV_NAMESPACE, "Envelope"),
            nsmap={"soapenv": SOAP_ENV_NAMESPACE, **nsmap},
        )
        etree.SubElement(envelope, etree.QName(SOAP_ENV_NAMESPACE, "Header"))
        body_el = etree.SubElement(envelope, etree.QName(SOAP_ENV_NAMESPACE, "Body"))
        body_el.append(body)
        return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")

    def _post(
        self,
        url: str,
        operation: str,
        soap_action: str,
        envelope: bytes,
        log: ProtocolLog | None,
    ) -> etree._Element:
        """POST an envelope and return the parsed response root."""
        request_text = envelope.decode("utf-8")
        if log is not None:
            log.request(operation, request_text)
        logger.debug(f"[AFIP] {operation} → {url}\n{mask_credentials(request_text)}")

        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{soap_action}"',
        }

        with metrics.time_call(operation):
            try:
                response = self._session.post(url, data=envelope, headers=headers, timeout=self.timeout)
            except requests.Timeout as e:
                self._log_failure(log, operation, f"timeout after {self.timeout}s")
                raise TransportError(f"{operation}: timeout after {self.timeout}s") from e
            except requests.RequestException as e:
                self._log_failure(log, operation, f"network error: {e}")
                raise TransportError(f"{operation}: network error: {e}") from e

            if log is not None:
                log.response(operation, response.status_code, response.text)

            if not 200 <= response.status_code < 300:
                self._log_failure(log, operation, f"HTTP {response.status_code}")
                raise TransportError(f"{operation}: HTTP {response.status_code}", status_code=response.status_code)

            content_type = response.headers.get("Content-Type", "")
            if "xml" not in content_type.lower():
                self._log_failure(log, operation, f"unexpected content type '{content_type}'")
                raise TransportError(
                    f"{operation}: expected XML, got '{content_type or 'no content type'}'",
                    status_code=response.status_code,
                )

            try:
                return etree.fromstring(response.content, parser=_PARSER)
            except etree.XMLSyntaxError as e:
                self._log_failure(log, operation, f"malformed XML: {e}")
                raise TransportError(f"{operation}: malformed XML response: {e}") from e

    @staticmethod
    def _log_failure(log: ProtocolLog | None, operation: str, message: str) -> None:
        logger.warning(f"⚠️ [AFIP] {operation} failed: {message}")
        if log is not None:
            log.error(f"{operation}: {message}")

    def _wsfe_call(self, operation: str, body: etree._Element, log: ProtocolLog | None) -> etree._Element:
        envelope = self._envelope(body, {"ar": WSFE_NAMESPACE})
        root = self._post(self.environment.wsfe_url, operation, f"{WSFE_NAMESPACE}{operation}", envelope, log)
        result = _find(root, f"{operation}Result")
        if result is None:
            fault = _text(root, "faultstring")
            raise TransportError(f"{operation}: response has no {operation}Result{f' ({fault})' if fault else ''}")
        return result

    # --- WSAA ---

    def login(self, signed_ticket: bytes, log: ProtocolLog | None = None) -> LoginResult:
        """
        Exchange a CMS-signed login ticket for WSAA credentials.

        Raises:
            TransportError: network failure, timeout, non-2xx or non-XML response
            AuthServiceError: the response lacks a usable loginTicketResponse
        """
        body = etree.Element(etree.QName(WSAA_NAMESPACE, "loginCms"))
        in0 = etree.SubElement(body, etree.QName(WSAA_NAMESPACE, "in0"))
        in0.text = base64.b64encode(signed_ticket).decode("ascii")
        envelope = self._envelope(body, {"wsaa": WSAA_NAMESPACE})

        root = self._post(self.environment.wsaa_url, "loginCms", "", envelope, log)

        login_return = _find(root, "loginCmsReturn")
        if login_return is None or not (login_return.text or "").strip():
            raise AuthServiceError("loginCms response has no loginCmsReturn")

        try:
            ticket = etree.fromstring(login_return.text.strip().encode("utf-8"), parser=_PARSER)
        except etree.XMLSyntaxError as e:
            raise AuthServiceError(f"loginTicketResponse is not valid XML: {e}") from e

        token = _text(ticket, "token")
        sign = _text(ticket, "sign")
        expiration = _text(ticket, "expirationTime")
        generation = _text(ticket, "generationTime")
        if not token or not sign or not expiration:
            raise AuthServiceError("loginTicketResponse is missing token, sign or expirationTime")

        try:
            expiration_time = datetime.fromisoformat(expiration)
            generation_time = datetime.fromisoformat(generation) if generation else expiration_time
        except ValueError as e:
            raise AuthServiceError(f"loginTicketResponse has an invalid timestamp: {e}") from e

        logger.info(f"✅ [WSAA] Login successful, token valid until {expiration_time.isoformat()}")
        return LoginResult(
            token=token,
            sign=sign,
            expiration_time=expiration_time,
            generation_time=generation_time,
        )

    # --- WSFEv1 ---

    def _auth_element(self, parent: etree._Element, credentials: AuthToken) -> None:
        auth = etree.SubElement(parent, etree.QName(WSFE_NAMESPACE, "Auth"))
        etree.SubElement(auth, etree.QName(WSFE_NAMESPACE, "Token")).text = credentials.token
        etree.SubElement(auth, etree.QName(WSFE_NAMESPACE, "Sign")).text = credentials.sign
        etree.SubElement(auth, etree.QName(WSFE_NAMESPACE, "Cuit")).text = credentials.tax_id

    def get_last_invoice_number(
        self,
        credentials: AuthToken,
        point_of_sale: int,
        voucher_type: VoucherType | str | int,
        log: ProtocolLog | None = None,
    ) -> int:
        """Last voucher number AFIP authorized for this point of sale and type."""
        ns = WSFE_NAMESPACE
        body = etree.Element(etree.QName(ns, "FECompUltimoAutorizado"))
        self._auth_element(body, credentials)
        etree.SubElement(body, etree.QName(ns, "PtoVta")).text = str(point_of_sale)
        etree.SubElement(body, etree.QName(ns, "CbteTipo")).text = str(_voucher_code(voucher_type))

        result = self._wsfe_call("FECompUltimoAutorizado", body, log)

        errors = _code_messages(result, "Errors", "Err")
        if errors:
            message = "; ".join(f"{e['code']}: {e['msg']}" for e in errors)
            raise AuthorityRejectionError(f"FECompUltimoAutorizado: {message}", errors=errors)

        number = _text(result, "CbteNro")
        if not number.isdigit():
            raise AuthorityRejectionError(f"FECompUltimoAutorizado returned no voucher number ('{number}')")
        return int(number)

    def _detail_element(self, parent: etree._Element, payload: InvoicePayload, number: int) -> None:
        ns = WSFE_NAMESPACE

        def sub(node: etree._Element, name: str, value: Any) -> etree._Element:
            child = etree.SubElement(node, etree.QName(ns, name))
            if value is not None:
                child.text = str(value)
            return child

        detail = sub(parent, "FECAEDetRequest", None)
        sub(detail, "Concepto", payload.concept)
        sub(detail, "DocTipo", payload.doc_type)
        sub(detail, "DocNro", payload.doc_number)
        sub(detail, "CbteDesde", number)
        sub(detail, "CbteHasta", number)
        sub(detail, "CbteFch", payload.issue_date.strftime("%Y%m%d"))
        sub(detail, "ImpTotal", _amount(payload.total))
        sub(detail, "ImpTotConc", _amount(payload.untaxed_amount))
        sub(detail, "ImpNeto", _amount(payload.net_amount))
        sub(detail, "ImpOpEx", _amount(payload.exempt_amount))
        sub(detail, "ImpTrib", _amount(payload.other_taxes))
        sub(detail, "ImpIVA", _amount(payload.tax_amount))
        sub(detail, "MonId", payload.currency)
        sub(detail, "MonCotiz", payload.currency_rate)
        sub(detail, "CondicionIVAReceptorId", payload.buyer_vat_condition)

        iva = sub(detail, "Iva", None)
        aliquot = sub(iva, "AlicIva", None)
        sub(aliquot, "Id", payload.vat_id)
        sub(aliquot, "BaseImp", _amount(payload.net_amount))
        sub(aliquot, "Importe", _amount(payload.tax_amount))

        if fiscal_settings.send_line_items and payload.line_items:
            items = sub(detail, "Items", None)
            for line in payload.line_items:
                item = sub(items, "Item", None)
                sub(item, "Descripcion", line.description[:200])
                sub(item, "Cantidad", line.quantity)
                sub(item, "PrecioUnitario", _amount(line.unit_price))
                sub(item, "Bonificacion", _amount(line.bonus))
                sub(item, "Importe", _amount(line.subtotal))

    def request_invoice_authorization(
        self,
        credentials: AuthToken,
        payload: InvoicePayload,
        log: ProtocolLog | None = None,
    ) -> AuthorityResponse:
        """
        Request a CAE for one voucher (FECAESolicitar).

        When ``payload.invoice_number`` is None the number is the authority's
        last authorized number plus one, fetched within the same exchange.

        Returns:
            ApprovedAuthorization or RejectedAuthorization

        Raises:
            TransportError: the number lookup failed; nothing was submitted
            SubmissionUncertainError: FECAESolicitar was sent but got no usable answer
            IncompleteApprovalError: Resultado A without a usable CAE
        """
        number = payload.invoice_number
        if number is None:
            number = self.get_last_invoice_number(credentials, payload.point_of_sale, payload.voucher_type, log) + 1
        if log is not None:
            log.add(f"FECAESolicitar {payload.describe()} Nro {number}")

        ns = WSFE_NAMESPACE
        body = etree.Element(etree.QName(ns, "FECAESolicitar"))
        self._auth_element(body, credentials)
        request = etree.SubElement(body, etree.QName(ns, "FeCAEReq"))
        header = etree.SubElement(request, etree.QName(ns, "FeCabReq"))
        etree.SubElement(header, etree.QName(ns, "CantReg")).text = "1"
        etree.SubElement(header, etree.QName(ns, "PtoVta")).text = str(payload.point_of_sale)
        etree.SubElement(header, etree.QName(ns, "CbteTipo")).text = str(payload.voucher_type.code)
        details = etree.SubElement(request, etree.QName(ns, "FeDetReq"))
        self._detail_element(details, payload, number)

        try:
            result = self._wsfe_call("FECAESolicitar", body, log)
        except TransportError as e:
            raise SubmissionUncertainError(
                f"{e} (number {number} may have been authorized; look it up before resubmitting)",
                invoice_number=number,
                status_code=e.status_code,
            ) from e
        return self._parse_authorization(result, number)

    @staticmethod
    def _parse_authorization(result: etree._Element, requested_number: int) -> AuthorityResponse:
        raw = {"FECAESolicitarResult": _to_dict(result)}
        errors = _code_messages(result, "Errors", "Err")
        detail = _find(result, "FECAEDetResponse")
        observations = _code_messages(detail, "Observaciones", "Obs")

        if detail is None:
            if not errors:
                errors = [{"code": "", "msg": "FECAESolicitar response has no FECAEDetResponse"}]
            return RejectedAuthorization(errors=errors, observations=observations, raw=raw)

        outcome = _text(detail, "Resultado")
        number_text = _text(detail, "CbteDesde")
        number = int(number_text) if number_text.isdigit() else requested_number
        cae = _text(detail, "CAE")
        due = _text(detail, "CAEFchVto")

        if outcome != "A" or errors:
            return RejectedAuthorization(errors=errors, observations=observations, invoice_number=number, raw=raw)

        if not cae or not due:
            raise IncompleteApprovalError(
                f"FECAESolicitar approved number {number} without CAE or CAEFchVto", invoice_number=number
            )

        try:
            cae_due_date = _parse_afip_date(due)
        except ValueError as e:
            raise IncompleteApprovalError(
                f"FECAESolicitar approved number {number} with invalid CAEFchVto '{due}'", invoice_number=number
            ) from e

        return ApprovedAuthorization(
            invoice_number=number,
            cae=cae,
            cae_due_date=cae_due_date,
            observations=observations,
            raw=raw,
        )

    def get_invoice(
        self,
        credentials: AuthToken,
        point_of_sale: int,
        voucher_type: VoucherType | str | int,
        number: int,
        log: ProtocolLog | None = None,
    ) -> AuthorizedVoucher | None:
        """
        FECompConsultar: the authorized voucher with this number, or None.

        None covers both "no such voucher" (error 602) and a voucher on
        record without an approved CAE.
        """
        ns = WSFE_NAMESPACE
        body = etree.Element(etree.QName(ns, "FECompConsultar"))
        self._auth_element(body, credentials)
        request = etree.SubElement(body, etree.QName(ns, "FeCompConsReq"))
        etree.SubElement(request, etree.QName(ns, "CbteTipo")).text = str(_voucher_code(voucher_type))
        etree.SubElement(request, etree.QName(ns, "CbteNro")).text = str(number)
        etree.SubElement(request, etree.QName(ns, "PtoVta")).text = str(point_of_sale)

        result = self._wsfe_call("FECompConsultar", body, log)

        errors = _code_messages(result, "Errors", "Err")
        if any(e["code"] == NOT_FOUND_CODE for e in errors):
            return None
        if errors:
            message = "; ".join(f"{e['code']}: {e['msg']}" for e in errors)
            raise AuthorityRejectionError(f"FECompConsultar: {message}", errors=errors)

        found = _find(result, "ResultGet")
        if found is None:
            raise AuthorityRejectionError("FECompConsultar returned no ResultGet")

        cae = _text(found, "CodAutorizacion")
        due = _text(found, "FchVto")
        if _text(found, "Resultado") != "A" or not cae or not due:
            return None

        try:
            return AuthorizedVoucher(
                invoice_number=int(_text(found, "CbteDesde") or number),
                cae=cae,
                cae_due_date=_parse_afip_date(due),
                doc_number=int(_text(found, "DocNro") or 0),
                total=Decimal(_text(found, "ImpTotal") or "0"),
                raw={"FECompConsultarResult": _to_dict(result)},
            )
        except (ValueError, ArithmeticError) as e:
            raise AuthorityRejectionError(f"FECompConsultar returned an unreadable voucher: {e}") from e

    def get_server_status(self, log: ProtocolLog | None = None) -> ServerStatus:
        """FEDummy: WSFEv1 infrastructure status."""
        body = etree.Element(etree.QName(WSFE_NAMESPACE, "FEDummy"))
        result = self._wsfe_call("FEDummy", body, log)
        return ServerStatus(
            app_server=_text(result, "AppServer"),
            db_server=_text(result, "DbServer"),
            auth_server=_text(result, "AuthServer"),
        )
