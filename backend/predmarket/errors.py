"""Error taxonomy surfaced by the market services.

Every error carries a machine-readable ``code`` and the HTTP status the
transport shim should answer with. Ledger-level failures live in
:mod:`predmarket.services.ledger.base` and are translated into these at the
service boundary.
"""

from __future__ import annotations

from typing import Any


class MarketError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MarketError):
    status_code = 400
    code = "validation_error"


class InvalidOption(ValidationError):
    code = "invalid_option"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class MissingCredential(ValidationError):
    code = "missing_credential"


class InvalidOutcome(ValidationError):
    code = "invalid_outcome"


class InvalidDestination(ValidationError):
    code = "invalid_destination"


class MissingTransactionHash(ValidationError):
    code = "missing_transaction_hash"


class UnverifiedTransaction(ValidationError):
    code = "unverified_transaction"


class Unauthorized(MarketError):
    status_code = 401
    code = "unauthorized"


class MarketNotFound(MarketError):
    status_code = 404
    code = "market_not_found"


class MarketClosed(MarketError):
    status_code = 409
    code = "market_closed"


class ResolutionPreconditionFailed(MarketError):
    """Resolution refused before any state changed; safe to retry later."""

    status_code = 400
    code = "resolution_precondition_failed"


class AlreadyResolved(ResolutionPreconditionFailed):
    code = "already_resolved"


class NoWinners(ResolutionPreconditionFailed):
    code = "no_winners"


class EmptyPool(ResolutionPreconditionFailed):
    code = "empty_pool"


class RewardTooSmall(ResolutionPreconditionFailed):
    code = "reward_too_small"


class InsufficientTreasuryBalance(ResolutionPreconditionFailed):
    code = "insufficient_treasury_balance"


class ResolutionInProgress(MarketError):
    status_code = 409
    code = "resolution_in_progress"


class TransferFailed(MarketError):
    status_code = 502
    code = "transfer_failed"

    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        details = {"lastError": str(last_error)} if last_error is not None else None
        super().__init__(message, details=details)
        self.last_error = last_error


class InternalInvariantViolation(MarketError):
    status_code = 500
    code = "internal_error"


class OptionNotFound(InternalInvariantViolation):
    code = "option_not_found"


class TreasuryNotConfigured(InternalInvariantViolation):
    code = "treasury_not_configured"


__all__ = [
    "AlreadyResolved",
    "EmptyPool",
    "InsufficientTreasuryBalance",
    "InternalInvariantViolation",
    "InvalidAmount",
    "InvalidDestination",
    "InvalidOption",
    "InvalidOutcome",
    "MarketClosed",
    "MarketError",
    "MarketNotFound",
    "MissingCredential",
    "MissingTransactionHash",
    "NoWinners",
    "OptionNotFound",
    "ResolutionInProgress",
    "ResolutionPreconditionFailed",
    "RewardTooSmall",
    "TransferFailed",
    "TreasuryNotConfigured",
    "Unauthorized",
    "UnverifiedTransaction",
    "ValidationError",
]
