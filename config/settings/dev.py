"""
Development settings for the fiscal invoicing platform
Homologation endpoints and SQLite for fast iteration.
"""

import os

from .base import *  # noqa: F403

# ===============================================================================
# DEVELOPMENT FLAGS
# ===============================================================================

DEBUG = True

ALLOWED_HOSTS = ['localhost', '127.0.0.1']

# ===============================================================================
# DATABASE FOR DEVELOPMENT (SQLite for speed)
# ===============================================================================

if os.environ.get("USE_POSTGRES") != "true":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": str(BASE_DIR / "db.sqlite3"),  # noqa: F405
        }
    }

# ===============================================================================
# AFIP (always homologation in development)
# ===============================================================================

FISCAL_ENVIRONMENT = "homologation"

LOGGING["loggers"]["apps.fiscal"]["level"] = "DEBUG"  # noqa: F405
