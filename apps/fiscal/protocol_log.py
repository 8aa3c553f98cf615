"""
Per-attempt protocol log.

Collects timestamped lines for one submission (requests, responses, errors)
and renders them for storage on the invoice or retry attempt. Credentials are
masked before they reach the log.
"""

from __future__ import annotations

import re

from django.utils import timezone

from .settings import fiscal_settings

_CREDENTIAL_PATTERN = re.compile(
    r"(<(?:\w+:)?(?:Token|Sign|token|sign)>)(.*?)(</(?:\w+:)?(?:Token|Sign|token|sign)>)",
    re.S,
)
# loginCmsReturn carries the ticket as escaped XML
_ESCAPED_CREDENTIAL_PATTERN = re.compile(
    r"(&lt;(?:Token|Sign|token|sign)&gt;)(.*?)(&lt;/(?:Token|Sign|token|sign)&gt;)",
    re.S,
)

TRUNCATION_MARKER = "\n... [truncated]"


def mask_credentials(text: str) -> str:
    """Replace Token/Sign element contents with a fixed mask."""
    text = _CREDENTIAL_PATTERN.sub(r"\1***\3", text)
    return _ESCAPED_CREDENTIAL_PATTERN.sub(r"\1***\3", text)


class ProtocolLog:
    """Append-only buffer for one submission attempt."""

    def __init__(self) -> None:
        self._lines: list[str] = []

    def __len__(self) -> int:
        return len(self._lines)

    def add(self, message: str) -> None:
        stamp = timezone.now().strftime("%H:%M:%S.%f")[:-3]
        self._lines.append(f"[{stamp}] {mask_credentials(message)}")

    def request(self, operation: str, body: str) -> None:
        self.add(f">>> {operation}\n{body}")

    def response(self, operation: str, status_code: int, body: str) -> None:
        self.add(f"<<< {operation} HTTP {status_code}\n{body}")

    def error(self, message: str) -> None:
        self.add(f"!!! {message}")

    def render(self, max_chars: int | None = None) -> str:
        text = "\n".join(self._lines)
        limit = max_chars if max_chars is not None else fiscal_settings.protocol_log_max_chars
        if len(text) > limit:
            return text[: max(limit - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER
        return text
