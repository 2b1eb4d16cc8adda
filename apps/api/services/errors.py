"""Domain errors raised by the ledger and the session orchestrators."""

from __future__ import annotations

from typing import Optional


class CreditsError(RuntimeError):
    """Base class for credit accounting errors."""


class InsufficientBalance(CreditsError):
    """Raised when a debit would take an account balance below zero."""

    def __init__(self, account_id: str, required: int, available: int) -> None:
        self.account_id = account_id
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient credits. Required: {self.required}, available: {self.available}.")


class UnknownAccount(CreditsError):
    """Raised when a ledger operation references a missing or inactive account."""


class UnknownSession(CreditsError):
    """Raised when a callback or settlement references a session that does not exist."""


class IdempotencyConflict(CreditsError):
    """Raised when an idempotency key is reused for a different account."""


class PackageNotFound(CreditsError):
    """Raised when a requested credit package is missing or inactive."""


class PlanRestriction(CreditsError):
    """Raised when the account plan tier does not allow the requested operation."""

    def __init__(self, message: str, plan_required: str) -> None:
        self.plan_required = plan_required
        super().__init__(message)


class InvalidSessionState(CreditsError):
    """Raised when a session transition is not allowed from its current status."""


class PaymentProviderError(CreditsError):
    """Raised when a payment provider call fails or the provider is not configured."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class PaymentDeclined(PaymentProviderError):
    """Raised when the provider reports the payment itself as failed or declined."""


class ProviderVerificationFailed(CreditsError):
    """Raised when a provider callback fails authenticity, amount or currency checks."""

    def __init__(self, message: str, provider_order_id: Optional[str] = None) -> None:
        self.provider_order_id = provider_order_id
        super().__init__(message)


class EngineDispatchFailed(CreditsError):
    """Raised when the analysis engine rejects a submission before streaming."""


class EngineStreamFailed(CreditsError):
    """Raised when the analysis engine fails after streaming started."""
