"""
Error taxonomy for AFIP electronic invoicing.

Every failure that crosses a component boundary is one of these. The class
name is persisted on the invoice (``error_kind``) and drives automatic retry
eligibility, so renaming a class is a data migration.
"""

from __future__ import annotations

from typing import Any


class FiscalError(Exception):
    """Base exception for fiscal invoicing errors."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class CertificateError(FiscalError):
    """Certificate or private key missing, malformed or mismatched. Never retried."""


class TransportError(FiscalError):
    """Network failure, timeout, non-2xx status or non-XML body."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthServiceError(FiscalError):
    """WSAA answered but the login ticket response is unusable."""

    retryable = True


class AuthorityRejectionError(FiscalError):
    """WSFEv1 rejected the voucher. Carries the authority error codes."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    @property
    def codes(self) -> list[str]:
        return [str(e.get("code", "")) for e in self.errors]


class UnconfirmedAuthorizationError(FiscalError):
    """
    FECAESolicitar for ``invoice_number`` was sent but its outcome is unknown.

    AFIP may have authorized the number. Never retried automatically: the
    next attempt must look the number up (FECompConsultar) before resubmitting.
    """

    def __init__(self, message: str, invoice_number: int, status_code: int | None = None) -> None:
        super().__init__(message)
        self.invoice_number = invoice_number
        self.status_code = status_code


class SubmissionUncertainError(UnconfirmedAuthorizationError):
    """Transport failure after FECAESolicitar left the client."""


class IncompleteApprovalError(UnconfirmedAuthorizationError):
    """Resultado A without a usable CAE or CAEFchVto."""


class AlreadyIssuedError(FiscalError):
    """The sale already has a completed (or in-flight) invoice."""


class TaxConfigurationError(FiscalError):
    """No active tax configuration for a branch, or more than one."""


class InvoiceNotFoundError(FiscalError):
    """Referenced invoice does not exist."""


class InvalidTransitionError(FiscalError):
    """Illegal invoice status change."""


RETRYABLE_ERROR_KINDS: frozenset[str] = frozenset(
    cls.__name__ for cls in (TransportError, AuthServiceError)
)
