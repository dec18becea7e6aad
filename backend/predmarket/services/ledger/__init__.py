"""Ledger gateway contract and the XRPL adapter."""

from .base import (
    AccountInfo,
    FinalityTimeout,
    LedgerConnection,
    LedgerError,
    LedgerGateway,
    LedgerRequestError,
    LedgerSubscription,
    PaymentRequest,
    SignedTransaction,
    SubmitResult,
    TransactionPending,
    TransactionStatus,
    TransferRejected,
)
from .xrpl import XrplGateway

__all__ = [
    "AccountInfo",
    "FinalityTimeout",
    "LedgerConnection",
    "LedgerError",
    "LedgerGateway",
    "LedgerRequestError",
    "LedgerSubscription",
    "PaymentRequest",
    "SignedTransaction",
    "SubmitResult",
    "TransactionPending",
    "TransactionStatus",
    "TransferRejected",
    "XrplGateway",
]
