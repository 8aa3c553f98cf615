# ===============================================================================
# PYTEST CONFIGURATION FOR THE FISCAL INVOICING PLATFORM
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- Naming convention: test_{feature}.py

Test Discovery:
- Run fiscal tests: pytest tests/fiscal/
- Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()

# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from apps.fiscal.models import TaxConfiguration  # noqa: E402
from apps.fiscal.types import Sale, SaleItem  # noqa: E402
from tests.fiscal.helpers import make_certificate  # noqa: E402


@pytest.fixture
def tax_configuration(db):
    """Active configuration for branch 'central': CUIT 20123456789, point of sale 3, 21% VAT"""
    return TaxConfiguration.objects.create(
        branch_id='central',
        tax_id='20123456789',
        point_of_sale=3,
        vat_rate=Decimal('21'),
    )


@pytest.fixture
def final_consumer_sale():
    """1000.00 sale with no buyer CUIT (Factura B)"""
    return Sale(
        sale_id='S-1001',
        branch_id='central',
        total=Decimal('1000.00'),
        items=[
            SaleItem(description='Yerba mate 1kg', quantity=Decimal('2'), unit_price=Decimal('300.00')),
            SaleItem(description='Termo acero', quantity=Decimal('1'), unit_price=Decimal('400.00')),
        ],
    )


@pytest.fixture
def certificate_pair():
    """(certificate PEM, private key PEM) for a self-signed test certificate"""
    return make_certificate()
