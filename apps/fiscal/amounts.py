"""
Amount computation for vouchers.

Sale prices include VAT. The authority wants the net base and the VAT amount
separately, each with two decimals, adding up exactly to the total.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .client import LineItemPayload
from .settings import fiscal_settings
from .types import SaleItem

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round_money(value: Decimal | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _decimal(value: Any, label: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid {label}: {value!r}") from e


@dataclass(frozen=True)
class TaxBreakdown:
    total: Decimal
    net_amount: Decimal
    tax_amount: Decimal
    vat_rate: Decimal
    vat_id: int


def split_gross(total: Decimal | int | str, vat_rate: Decimal | int | str) -> TaxBreakdown:
    """
    Split a VAT-inclusive total into net and tax for one rate.

    The net is rounded half-up; the tax is whatever is left, so
    net + tax == total to the cent.
    """
    gross = round_money(_decimal(total, "total"))
    if gross <= 0:
        raise ValueError(f"Invoice total must be positive, got {gross}")

    rate = _decimal(vat_rate, "VAT rate")
    vat_id = fiscal_settings.vat_id_for(rate)

    net = round_money(gross / (1 + rate / HUNDRED))
    return TaxBreakdown(
        total=gross,
        net_amount=net,
        tax_amount=gross - net,
        vat_rate=rate,
        vat_id=vat_id,
    )


def line_item_payload(item: SaleItem, default_rate: Decimal) -> LineItemPayload:
    """Voucher line with the unit price net of VAT and the discount as an amount."""
    rate = _decimal(item.vat_rate if item.vat_rate is not None else default_rate, "VAT rate")
    quantity = _decimal(item.quantity, "quantity")
    unit_net = round_money(_decimal(item.unit_price, "unit price") / (1 + rate / HUNDRED))
    gross_line = unit_net * quantity
    bonus = round_money(gross_line * _decimal(item.discount_percent, "discount") / HUNDRED)
    return LineItemPayload(
        description=item.description,
        quantity=quantity,
        unit_price=unit_net,
        bonus=bonus,
        subtotal=round_money(gross_line - bonus),
    )


def line_items_payload(items: Iterable[SaleItem], default_rate: Decimal) -> list[LineItemPayload]:
    """
    Voucher lines for a single-rate invoice.

    The voucher carries one AlicIva entry, so every item must use the invoice
    rate (or none, inheriting it).

    Raises:
        ValueError: an item has its own rate different from the invoice rate
    """
    items = list(items)
    rate = _decimal(default_rate, "VAT rate")
    mixed = [item for item in items if item.vat_rate is not None and _decimal(item.vat_rate, "VAT rate") != rate]
    if mixed:
        described = ", ".join(f"'{item.description}' at {item.vat_rate}%" for item in mixed)
        raise ValueError(f"Mixed VAT rates are not supported: invoice rate is {rate}%, but {described}")
    return [line_item_payload(item, rate) for item in items]


# --- Snapshot stored on the invoice ---


def serialize_items(items: Iterable[SaleItem]) -> list[dict[str, str | None]]:
    return [
        {
            "description": item.description,
            "quantity": str(item.quantity),
            "unit_price": str(item.unit_price),
            "discount_percent": str(item.discount_percent),
            "vat_rate": None if item.vat_rate is None else str(item.vat_rate),
        }
        for item in items
    ]


def deserialize_items(data: Iterable[dict[str, Any]]) -> list[SaleItem]:
    return [
        SaleItem(
            description=str(entry.get("description", "")),
            quantity=_decimal(entry.get("quantity", "1"), "quantity"),
            unit_price=_decimal(entry.get("unit_price", "0"), "unit price"),
            discount_percent=_decimal(entry.get("discount_percent") or "0", "discount"),
            vat_rate=None if entry.get("vat_rate") is None else _decimal(entry["vat_rate"], "VAT rate"),
        )
        for entry in data
    ]
