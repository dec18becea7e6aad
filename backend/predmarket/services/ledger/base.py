"""Contracts for distributed-ledger integrations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncContextManager, Protocol

from predmarket.domain import IncomingPayment

SUCCESS_CODE = "tesSUCCESS"
# Codes that mean "this signed blob is already known to the network"; the
# ledger lookup decides the real outcome.
ALREADY_SUBMITTED_CODES = frozenset({"tefPAST_SEQ", "tefALREADY"})


def is_soft_result(code: str | None) -> bool:
    """Return True for result codes the network may still apply later."""

    if not code:
        return False
    return code.startswith(("ter", "tel"))


class LedgerError(Exception):
    """Base class for failures talking to the ledger."""


class LedgerRequestError(LedgerError):
    """The ledger node answered a request with an error status."""

    _RETRYABLE = {"tooBusy", "noNetwork", "noCurrent", "noClosed", "slowDown"}

    def __init__(self, error: str, message: str | None = None) -> None:
        self.error = error
        self.error_message = message
        super().__init__(f"{error}: {message}" if message else error)

    @property
    def retryable(self) -> bool:
        return self.error in self._RETRYABLE


class TransferRejected(LedgerError):
    """A transfer came back with a non-success result code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(f"Transaction failed with code: {code}" + (f" ({message})" if message else ""))

    @property
    def retryable(self) -> bool:
        return is_soft_result(self.code)


class TransactionPending(LedgerError):
    """A submitted transaction is not yet part of a validated ledger."""


class FinalityTimeout(LedgerError):
    """A transaction did not reach a validated ledger within the allowed wait."""


@dataclass(slots=True, frozen=True)
class AccountInfo:
    address: str
    balance: Decimal
    sequence: int


@dataclass(slots=True, frozen=True)
class PaymentRequest:
    account: str
    destination: str
    amount: Decimal
    destination_tag: int | None = None
    sequence: int | None = None
    last_ledger_sequence: int | None = None
    fee_drops: int | None = None


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    tx_blob: str
    tx_hash: str


@dataclass(slots=True, frozen=True)
class SubmitResult:
    tx_hash: str
    engine_result: str
    message: str | None = None


@dataclass(slots=True, frozen=True)
class TransactionStatus:
    tx_hash: str
    validated: bool
    result_code: str | None = None
    ledger_index: int | None = None
    transaction_type: str | None = None
    account: str | None = None
    destination: str | None = None
    delivered_amount: Decimal | None = None

    @property
    def succeeded(self) -> bool:
        return self.validated and self.result_code == SUCCESS_CODE


class LedgerConnection(Protocol):
    """Operations available while a gateway connection is held."""

    async def account_info(self, address: str) -> AccountInfo:
        """Return balance and next sequence number for ``address``."""

    async def validated_ledger_index(self) -> int:
        """Return the index of the latest validated ledger."""

    async def sign_payment(self, secret: str, payment: PaymentRequest) -> SignedTransaction:
        """Build and sign a payment; the blob can be resubmitted safely."""

    async def submit(self, signed: SignedTransaction) -> SubmitResult:
        """Submit a signed blob and return the preliminary result."""

    async def lookup_transaction(self, tx_hash: str) -> TransactionStatus | None:
        """Return the current status of ``tx_hash`` or ``None`` if unknown."""


class LedgerSubscription(Protocol):
    address: str

    async def close(self) -> None:
        """Stop delivering events for the address."""


class LedgerGateway(Protocol):
    """Interface implemented by ledger adapters."""

    name: str

    def connect(self) -> AsyncContextManager[LedgerConnection]:
        """Acquire a connection that is released when the context exits."""

    async def subscribe(
        self, address: str, channel: asyncio.Queue[IncomingPayment]
    ) -> LedgerSubscription:
        """Push incoming payments for ``address`` onto ``channel``."""


__all__ = [
    "ALREADY_SUBMITTED_CODES",
    "AccountInfo",
    "FinalityTimeout",
    "LedgerConnection",
    "LedgerError",
    "LedgerGateway",
    "LedgerRequestError",
    "LedgerSubscription",
    "PaymentRequest",
    "SUCCESS_CODE",
    "SignedTransaction",
    "SubmitResult",
    "TransactionPending",
    "TransactionStatus",
    "TransferRejected",
    "is_soft_result",
]
