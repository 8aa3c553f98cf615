"""
Background work for fiscal invoicing.

These tasks are designed for use with Django-Q2:
- renew_fiscal_tokens_task: renew WSAA tokens that are close to expiry
- retry_failed_invoices_task: automatic retry of transient failures
- sweep_stale_invoices_task: park invoices stuck in pending/processing
- retry_invoice_task: one manual retry, queued from the command line

Usage:
    from django_q.tasks import async_task
    async_task('apps.fiscal.tasks.renew_fiscal_tokens_task')
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .settings import VoucherType, fiscal_settings

if TYPE_CHECKING:
    from .client import SoapProtocolClient
    from .repository import FiscalRepository
    from .token_storage import AuthTokenManager

logger = logging.getLogger(__name__)

# Task timeout in seconds
TASK_TIMEOUT = 300  # 5 minutes


@dataclass
class RenewalSummary:
    """Result of one renewal pass."""

    renewed: int = 0
    unchanged: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "renewed": self.renewed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "details": self.details,
        }


class TokenRenewalJob:
    """
    Renew WSAA tokens for every active tax id.

    A token with more than the safety margin left is skipped. A renewed token
    is smoke-tested with FECompUltimoAutorizado; a failing smoke test counts
    as a failed renewal. One tax id failing never stops the others.
    """

    def __init__(
        self,
        repository: FiscalRepository,
        tokens: AuthTokenManager,
        client: SoapProtocolClient,
        pause_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._tokens = tokens
        self._client = client
        self._pause_seconds = pause_seconds
        self._sleep = sleep

    @property
    def pause_seconds(self) -> float:
        if self._pause_seconds is not None:
            return self._pause_seconds
        return fiscal_settings.renewal_pause_seconds

    def _targets(self) -> dict[str, int]:
        """Distinct tax ids of active configurations, with a point of sale to smoke-test."""
        targets: dict[str, int] = {}
        for config in self._repository.list_active_tax_configurations():
            targets.setdefault(config.tax_id, config.point_of_sale)
        return targets

    def run(self) -> RenewalSummary:
        summary = RenewalSummary()
        renewals = 0

        for tax_id, point_of_sale in self._targets().items():
            current = self._tokens.peek_token(tax_id)
            if current is not None and current.is_valid(self._tokens.margin):
                minutes = int(current.remaining().total_seconds() // 60)
                summary.unchanged += 1
                summary.details.append({"tax_id": tax_id, "status": "unchanged", "minutes_remaining": minutes})
                logger.debug(f"[Token Renewal] {tax_id} still valid for {minutes} minutes")
                continue

            if renewals and self.pause_seconds > 0:
                self._sleep(self.pause_seconds)
            renewals += 1

            try:
                token = self._tokens.renew(tax_id)
                last_number = self._client.get_last_invoice_number(token, point_of_sale, VoucherType.B)
            except Exception as e:
                summary.failed += 1
                summary.details.append({"tax_id": tax_id, "status": "failed", "error": f"{type(e).__name__}: {e}"})
                logger.error(f"🔥 [Token Renewal] {tax_id} failed: {type(e).__name__}: {e}")
                continue

            summary.renewed += 1
            summary.details.append(
                {
                    "tax_id": tax_id,
                    "status": "renewed",
                    "expires_at": token.expires_at.isoformat(),
                    "last_invoice_number": last_number,
                }
            )
            logger.info(f"✅ [Token Renewal] {tax_id} renewed, last voucher B at POS {point_of_sale}: {last_number}")

        logger.info(
            f"[Token Renewal] Done: {summary.renewed} renewed, {summary.unchanged} unchanged, {summary.failed} failed"
        )
        return summary


# --- Task Entry Points ---


def renew_fiscal_tokens_task() -> dict[str, Any]:
    """Scheduled WSAA token renewal."""
    from .registry import get_registry  # noqa: PLC0415

    logger.info("[Fiscal Task] Starting token renewal")
    return get_registry().renewal_job.run().to_dict()


def retry_failed_invoices_task() -> dict[str, Any]:
    """Scheduled automatic retry of transient failures."""
    from .registry import get_registry  # noqa: PLC0415

    logger.info("[Fiscal Task] Starting automatic retries")
    return get_registry().retries.retry_due_invoices().to_dict()


def sweep_stale_invoices_task() -> dict[str, Any]:
    """Scheduled sweep of invoices stuck in pending/processing."""
    from .registry import get_registry  # noqa: PLC0415

    swept = get_registry().retries.sweep_stale_invoices()
    return {"swept": swept}


def retry_invoice_task(invoice_id: str, user_id: str) -> dict[str, Any]:
    """Retry one invoice; queued by ``retry_invoice --async``."""
    from .exceptions import FiscalError  # noqa: PLC0415
    from .registry import get_registry  # noqa: PLC0415

    logger.info(f"[Fiscal Task] Retrying invoice {invoice_id} for {user_id}")
    try:
        attempt = get_registry().retries.retry(invoice_id, user_id)
    except FiscalError as e:
        logger.warning(f"⚠️ [Fiscal Task] Retry of {invoice_id} refused: {e}")
        return {"success": False, "invoice_id": invoice_id, "error": str(e), "error_kind": e.kind}

    return {
        "success": attempt.succeeded,
        "invoice_id": invoice_id,
        "attempt_id": attempt.pk,
        "cae": attempt.cae,
        "error": attempt.error,
    }


# --- Task Scheduling Helpers ---


def schedule_fiscal_tasks() -> None:
    """
    Schedule recurring fiscal tasks.

    Called from FiscalConfig.ready() when FISCAL_ENABLED is set.
    """
    from django_q.models import Schedule  # noqa: PLC0415

    Schedule.objects.update_or_create(
        name="fiscal_renew_tokens",
        defaults={
            "func": "apps.fiscal.tasks.renew_fiscal_tokens_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": fiscal_settings.renewal_interval_minutes,
        },
    )

    Schedule.objects.update_or_create(
        name="fiscal_retry_failed_invoices",
        defaults={
            "func": "apps.fiscal.tasks.retry_failed_invoices_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 5,
        },
    )

    Schedule.objects.update_or_create(
        name="fiscal_sweep_stale_invoices",
        defaults={
            "func": "apps.fiscal.tasks.sweep_stale_invoices_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 15,
        },
    )

    logger.info("✅ [Fiscal] Scheduled tasks configured")


def queue_invoice_retry(invoice_id: str, user_id: str) -> str:
    """Queue a manual retry on the Django-Q cluster and return the task id."""
    from django_q.tasks import async_task  # noqa: PLC0415

    task_id = async_task(
        "apps.fiscal.tasks.retry_invoice_task",
        str(invoice_id),
        str(user_id),
        timeout=TASK_TIMEOUT,
    )
    logger.info(f"[Fiscal] Queued retry for invoice {invoice_id}: task {task_id}")
    return str(task_id)
