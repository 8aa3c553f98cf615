"""
Django app configuration for the fiscal app
"""

import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class FiscalConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.fiscal"
    label = "fiscal"
    verbose_name = "AFIP Electronic Invoicing"

    def ready(self) -> None:
        """Build the service registry and schedule recurring fiscal tasks."""
        from apps.fiscal.registry import FiscalRegistry  # noqa: PLC0415
        from apps.fiscal.settings import fiscal_settings  # noqa: PLC0415

        self.registry = FiscalRegistry()

        if fiscal_settings.enabled:
            try:
                from apps.fiscal.tasks import schedule_fiscal_tasks  # noqa: PLC0415

                schedule_fiscal_tasks()
            except Exception:
                logger.warning("⚠️ [Fiscal] Failed to schedule fiscal tasks during startup")
