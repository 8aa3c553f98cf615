"""
Production settings for the fiscal invoicing platform
Security-first configuration talking to the AFIP production endpoints.
"""

import os

from django.core.exceptions import ImproperlyConfigured

from .base import *  # noqa: F403

# ===============================================================================
# PRODUCTION SECURITY VALIDATION
# ===============================================================================

validate_production_secret_key()  # noqa: F405

# ===============================================================================
# PRODUCTION FLAGS
# ===============================================================================

DEBUG = False

ALLOWED_HOSTS = os.environ.get('ALLOWED_HOSTS', '').split(',')

# ===============================================================================
# SECURITY SETTINGS
# ===============================================================================

SECURE_SSL_REDIRECT = True
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True
SECURE_CONTENT_TYPE_NOSNIFF = True
SECURE_HSTS_SECONDS = 31536000  # 1 year
SECURE_HSTS_INCLUDE_SUBDOMAINS = True
X_FRAME_OPTIONS = 'DENY'

# ===============================================================================
# DATABASE PRODUCTION SETTINGS
# ===============================================================================

DATABASES['default'].update({  # noqa: F405
    'CONN_MAX_AGE': 600,
})

# ===============================================================================
# AFIP PRODUCTION
# ===============================================================================

FISCAL_ENVIRONMENT = os.environ.get('FISCAL_ENVIRONMENT', 'production')

if not ENCRYPTION_KEY:  # noqa: F405
    raise ImproperlyConfigured("DJANGO_ENCRYPTION_KEY must be set in production (AFIP tokens are stored encrypted)")
