from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class PaymentsTransientError(DomainDependencyError):
    """Timeouts, transport failures and 429/5xx answers from the payments API."""


class PaymentsPermanentError(DomainDependencyError):
    """Rejections that will not succeed on retry."""
