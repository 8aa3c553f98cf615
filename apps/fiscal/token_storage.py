"""
WSAA token management per tax id.

Tokens live about 12 hours. A valid token is served from a process-local
map (falling back to the database) without taking any lock; renewal is
serialized per tax id so concurrent callers share a single login.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from .locks import KeyedLock
from .metrics import metrics
from .settings import fiscal_settings
from .types import AuthToken

if TYPE_CHECKING:
    from .client import SoapProtocolClient
    from .protocol_log import ProtocolLog
    from .repository import FiscalRepository
    from .signer import CertificateSigner

logger = logging.getLogger(__name__)


class AuthTokenManager:
    """
    Owns the WSAA tokens of every tax id.

    Only this class creates or replaces tokens; the rest of the app asks it
    for one and never looks at expirations.
    """

    def __init__(
        self,
        repository: FiscalRepository,
        client: SoapProtocolClient,
        signer_for: Callable[[str], CertificateSigner],
        margin: timedelta | None = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._signer_for = signer_for
        self._margin = margin if margin is not None else timedelta(hours=fiscal_settings.renewal_margin_hours)
        self._tokens: dict[str, AuthToken] = {}
        self._locks = KeyedLock()

    @property
    def margin(self) -> timedelta:
        return self._margin

    def _usable(self, token: AuthToken | None) -> bool:
        return token is not None and token.is_valid(self._margin)

    def _lookup(self, tax_id: str) -> AuthToken | None:
        token = self._tokens.get(tax_id)
        if self._usable(token):
            return token
        stored = self._repository.find_token(tax_id)
        if stored is not None:
            self._tokens[tax_id] = stored
        return stored

    def get_valid_token(self, tax_id: str, log: ProtocolLog | None = None) -> AuthToken:
        """
        A token with more than the safety margin left, renewing if needed.

        Signer and client errors (CertificateError, TransportError,
        AuthServiceError) propagate unchanged.
        """
        token = self._lookup(tax_id)
        if self._usable(token):
            return token  # type: ignore[return-value]

        with self._locks.hold(tax_id):
            # Another caller may have renewed while we waited
            token = self._lookup(tax_id)
            if self._usable(token):
                logger.debug(f"[WSAA] Token for {tax_id} renewed by a concurrent caller")
                return token  # type: ignore[return-value]
            return self._login(tax_id, log)

    def peek_token(self, tax_id: str) -> AuthToken | None:
        """Current token, valid or not. Never renews."""
        return self._tokens.get(tax_id) or self._repository.find_token(tax_id)

    def renew(self, tax_id: str, log: ProtocolLog | None = None) -> AuthToken:
        """Force a new login regardless of the current token."""
        with self._locks.hold(tax_id):
            return self._login(tax_id, log)

    def forget(self, tax_id: str) -> None:
        """Drop the process-local copy; the next read goes to the database."""
        self._tokens.pop(tax_id, None)

    def _login(self, tax_id: str, log: ProtocolLog | None) -> AuthToken:
        logger.info(f"🔐 [WSAA] Requesting new token for {tax_id}")
        if log is not None:
            log.add(f"WSAA login for {tax_id}")
        try:
            signer = self._signer_for(tax_id)
            result = self._client.login(signer.sign_ticket(), log)
        except Exception:
            metrics.record_renewal("failure")
            raise

        token = AuthToken(
            tax_id=tax_id,
            token=result.token,
            sign=result.sign,
            expires_at=result.expiration_time,
            generated_at=result.generation_time,
        )
        self._repository.create_or_replace_token(tax_id, token)
        self._tokens[tax_id] = token
        metrics.record_renewal("success")
        metrics.set_token_remaining(tax_id, token.remaining().total_seconds() / 60)
        logger.info(f"✅ [WSAA] New token for {tax_id} valid until {token.expires_at.isoformat()}")
        return token

    def token_status(self) -> dict[str, Any]:
        """Summary of stored tokens: totals plus minutes to expiry per tax id."""
        now = timezone.now()
        tokens = []
        for token in self._repository.list_tokens():
            minutes = int(token.remaining(now).total_seconds() // 60)
            metrics.set_token_remaining(token.tax_id, minutes)
            tokens.append(
                {
                    "tax_id": token.tax_id,
                    "expires_at": token.expires_at.isoformat(),
                    "minutes_remaining": minutes,
                    "valid": token.is_valid(now=now),
                    "needs_renewal": not token.is_valid(self._margin, now=now),
                }
            )
        valid = sum(1 for t in tokens if t["valid"])
        return {
            "total": len(tokens),
            "valid": valid,
            "expired": len(tokens) - valid,
            "tokens": tokens,
        }
