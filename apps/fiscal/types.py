"""
Plain value types shared across the fiscal app.

These carry no persistence concerns; models and the repository convert to
and from them at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from django.utils import timezone


@dataclass(frozen=True)
class AuthToken:
    """WSAA access ticket for one tax id. Replaced wholesale on renewal."""

    tax_id: str
    token: str
    sign: str
    expires_at: datetime
    generated_at: datetime

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or timezone.now())

    def is_valid(self, margin: timedelta = timedelta(0), now: datetime | None = None) -> bool:
        """True while more than ``margin`` of validity remains."""
        return self.remaining(now) > margin

    def __repr__(self) -> str:
        return f"AuthToken(tax_id={self.tax_id!r}, expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True)
class SaleItem:
    """One sold line as reported by the point of sale. Prices include VAT."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")
    vat_rate: Decimal | None = None


@dataclass(frozen=True)
class Sale:
    """A completed sale awaiting its fiscal voucher."""

    sale_id: str
    branch_id: str
    total: Decimal
    items: list[SaleItem] = field(default_factory=list)
    buyer_tax_id: str = ""


@dataclass(frozen=True)
class ContingencyDetails:
    """What a failed issuance reports to back-office staff."""

    title: str
    description: str
    invoice_id: str | None = None
    metadata: dict = field(default_factory=dict)
    created_by: str = "system"
