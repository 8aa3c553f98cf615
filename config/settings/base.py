"""
Django settings for the fiscal invoicing platform - Base Configuration
Electronic invoicing against the AFIP WSAA/WSFEv1 web services.
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

THIRD_PARTY_APPS: list[str] = [
    'django_q',
]

LOCAL_APPS: list[str] = [
    'apps.fiscal',  # 🧾 AFIP electronic invoicing (WSAA + WSFEv1)
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'
ASGI_APPLICATION = 'config.asgi.application'

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'fiscal'),
        'USER': os.environ.get('DB_USER', 'fiscal'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'development_password'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
        'CONN_MAX_AGE': 60,
        'OPTIONS': {
            'application_name': 'fiscal_platform',
        },
    }
}

# ===============================================================================
# INTERNATIONALIZATION & LOCALIZATION
# ===============================================================================

LANGUAGE_CODE = 'es-ar'
TIME_ZONE = 'America/Argentina/Buenos_Aires'
USE_I18N = True
USE_TZ = True

# ===============================================================================
# STATIC FILES
# ===============================================================================

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# ===============================================================================
# CACHE CONFIGURATION
# ===============================================================================

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'fiscal-cache',
    }
}

# ===============================================================================
# TASK QUEUE (django-q2, ORM broker)
# ===============================================================================

Q_CLUSTER = {
    'name': 'fiscal',
    'workers': int(os.environ.get('Q_WORKERS', '2')),
    'timeout': 300,
    'retry': 360,
    'orm': 'default',
}

# ===============================================================================
# AFIP ELECTRONIC INVOICING 🧾
# ===============================================================================

# "homologation" or "production"
FISCAL_ENVIRONMENT = os.environ.get('FISCAL_ENVIRONMENT', 'homologation')
FISCAL_ENABLED = os.environ.get('FISCAL_ENABLED', 'true').lower() == 'true'

# Certificate and private key as base64-encoded PEM blocks
FISCAL_CERT_BASE64 = os.environ.get('FISCAL_CERT_BASE64', '')
FISCAL_KEY_BASE64 = os.environ.get('FISCAL_KEY_BASE64', '')

# Optional per-CUIT certificate material: {"20123456789": {"cert": "<b64>", "key": "<b64>"}}
FISCAL_CERTIFICATES: dict[str, dict[str, str]] = {}

FISCAL_REQUEST_TIMEOUT_SECONDS = int(os.environ.get('FISCAL_REQUEST_TIMEOUT_SECONDS', '10'))
FISCAL_TOKEN_RENEWAL_MARGIN_HOURS = int(os.environ.get('FISCAL_TOKEN_RENEWAL_MARGIN_HOURS', '6'))
FISCAL_TOKEN_RENEWAL_INTERVAL_MINUTES = int(os.environ.get('FISCAL_TOKEN_RENEWAL_INTERVAL_MINUTES', '60'))
FISCAL_RENEWAL_PAUSE_SECONDS = float(os.environ.get('FISCAL_RENEWAL_PAUSE_SECONDS', '2'))

# Serialize line items into FECAESolicitar (off: items only go to the protocol log)
FISCAL_SEND_LINE_ITEMS = os.environ.get('FISCAL_SEND_LINE_ITEMS', 'false').lower() == 'true'
FISCAL_PROTOCOL_LOG_MAX_CHARS = 10000

# Automatic recovery
FISCAL_STALE_INVOICE_MINUTES = int(os.environ.get('FISCAL_STALE_INVOICE_MINUTES', '30'))
FISCAL_RETRY_BATCH_SIZE = int(os.environ.get('FISCAL_RETRY_BATCH_SIZE', '50'))

# External sales store: "app_label.ModelName" and the boolean field flipped on success
FISCAL_SALE_MODEL = os.environ.get('FISCAL_SALE_MODEL', '')
FISCAL_SALE_INVOICED_FIELD = os.environ.get('FISCAL_SALE_INVOICED_FIELD', 'invoiced')

# ===============================================================================
# ENCRYPTION (token and sign at rest)
# ===============================================================================

ENCRYPTION_KEY = os.environ.get('DJANGO_ENCRYPTION_KEY')

# ===============================================================================
# LOGGING
# ===============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {process:d} {thread:d} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'apps.fiscal': {
            'handlers': ['console'],
            'level': os.environ.get('FISCAL_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
}

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY')
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings
    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2
    )
    SECRET_KEY = 'django-insecure-dev-key-only-change-in-production-or-tests'  # noqa: S105

ALLOWED_HOSTS: list[str] = []


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith('django-insecure-'):
        raise ValueError(
            "🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production! "
            "Generate a secure key with django.core.management.utils.get_random_secret_key()"
        )
