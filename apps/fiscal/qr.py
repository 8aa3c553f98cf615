"""
AFIP verification QR (RG 4291).

The QR encodes a URL whose ``p`` parameter is base64-encoded JSON describing
the voucher; anyone can scan it to check the CAE on the AFIP site.
"""

from __future__ import annotations

import base64
import io
import json
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

import qrcode

from .settings import CURRENCY_ID, CURRENCY_RATE, DOC_TYPE_CUIT, DOC_TYPE_FINAL_CONSUMER, QR_BASE_URL, QR_VERSION

if TYPE_CHECKING:
    from .models import Invoice

logger = logging.getLogger(__name__)


def build_qr_payload(invoice: Invoice) -> dict[str, Any]:
    buyer = invoice.buyer_tax_id
    return {
        "ver": QR_VERSION,
        "fecha": invoice.issue_date.isoformat(),
        "cuit": int(invoice.tax_id),
        "ptoVta": invoice.point_of_sale,
        "tipoCmp": invoice.voucher_code,
        "nroCmp": invoice.invoice_number,
        "importe": float(invoice.total),
        "moneda": CURRENCY_ID,
        "ctz": CURRENCY_RATE,
        "tipoDocRec": DOC_TYPE_CUIT if buyer else DOC_TYPE_FINAL_CONSUMER,
        "nroDocRec": int(buyer) if buyer else 0,
        "tipoCodAut": "E",
        "codAut": int(invoice.cae),
    }


def build_qr_url(invoice: Invoice) -> str:
    payload = json.dumps(build_qr_payload(invoice), separators=(",", ":"))
    encoded = base64.b64encode(payload.encode("utf-8")).decode("ascii")
    return f"{QR_BASE_URL}?p={encoded}"


def decode_qr_url(url: str) -> dict[str, Any]:
    """Inverse of ``build_qr_url``: the JSON payload carried by the URL."""
    values = parse_qs(urlparse(url).query, keep_blank_values=True).get("p")
    if not values:
        raise ValueError("QR URL has no 'p' parameter")
    # parse_qs turns '+' into spaces
    encoded = values[0].replace(" ", "+")
    return json.loads(base64.b64decode(encoded))


def render_qr_data_uri(content: str) -> str:
    """PNG image of ``content`` as a data URI."""
    qr = qrcode.QRCode(version=None, box_size=6, border=4)
    qr.add_data(content)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, "PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def generate_qr(invoice: Invoice) -> tuple[str, str]:
    """URL and PNG data URI for a completed invoice."""
    url = build_qr_url(invoice)
    return url, render_qr_data_uri(url)
