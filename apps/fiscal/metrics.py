"""
Prometheus metrics for fiscal invoicing.

- WSAA/WSFEv1 call counts and latency per operation
- Issuance outcomes
- Token renewals
- Retries and contingencies
"""

from __future__ import annotations

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from prometheus_client import Counter, Gauge, Histogram

from .settings import fiscal_settings

logger = logging.getLogger(__name__)


class FiscalMetrics:
    """
    Metric collection for the fiscal app.

    All metrics are prefixed with FISCAL_METRICS_PREFIX (default: 'fiscal').
    """

    def __init__(self, prefix: str | None = None) -> None:
        prefix = prefix or fiscal_settings.metrics_prefix

        self.authority_calls_total = Counter(
            f"{prefix}_authority_calls_total",
            "Total calls to AFIP web services",
            ["operation", "outcome", "environment"],
        )

        self.authority_call_duration_seconds = Histogram(
            f"{prefix}_authority_call_duration_seconds",
            "AFIP web service call duration",
            ["operation", "environment"],
            buckets=(0.25, 0.5, 1, 2, 5, 10, 20),
        )

        self.issuances_total = Counter(
            f"{prefix}_issuances_total",
            "Invoice submissions by outcome",
            ["outcome", "voucher_type"],
        )

        self.token_renewals_total = Counter(
            f"{prefix}_token_renewals_total",
            "WSAA token renewals",
            ["outcome"],
        )

        self.retries_total = Counter(
            f"{prefix}_retries_total",
            "Invoice retries",
            ["result", "trigger"],
        )

        self.contingencies_total = Counter(
            f"{prefix}_contingencies_total",
            "Contingencies raised",
            ["origin"],
        )

        self.token_minutes_remaining = Gauge(
            f"{prefix}_token_minutes_remaining",
            "Minutes until the stored WSAA token expires",
            ["tax_id"],
        )

    # ===== Convenience Methods =====

    def record_call(self, operation: str, outcome: str, duration: float) -> None:
        env = fiscal_settings.environment.value
        self.authority_calls_total.labels(operation=operation, outcome=outcome, environment=env).inc()
        self.authority_call_duration_seconds.labels(operation=operation, environment=env).observe(duration)

    def record_issuance(self, outcome: str, voucher_type: str) -> None:
        self.issuances_total.labels(outcome=outcome, voucher_type=voucher_type).inc()

    def record_renewal(self, outcome: str) -> None:
        self.token_renewals_total.labels(outcome=outcome).inc()

    def record_retry(self, result: str, automatic: bool) -> None:
        self.retries_total.labels(result=result, trigger="automatic" if automatic else "manual").inc()

    def record_contingency(self, origin: str) -> None:
        self.contingencies_total.labels(origin=origin).inc()

    def set_token_remaining(self, tax_id: str, minutes: float) -> None:
        self.token_minutes_remaining.labels(tax_id=tax_id).set(minutes)

    @contextmanager
    def time_call(self, operation: str) -> Generator[dict[str, Any]]:
        """Time an authority call; a raising block records the exception class as outcome."""
        start = time.monotonic()
        context: dict[str, Any] = {"outcome": "success"}
        try:
            yield context
        except Exception as e:
            context["outcome"] = type(e).__name__
            raise
        finally:
            self.record_call(operation, context["outcome"], time.monotonic() - start)


# Module-level metrics instance
metrics = FiscalMetrics()
