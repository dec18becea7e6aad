"""Submit-and-confirm helpers shared by vote intake and settlement."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from .ledger.base import (
    ALREADY_SUBMITTED_CODES,
    SUCCESS_CODE,
    FinalityTimeout,
    LedgerConnection,
    LedgerRequestError,
    SignedTransaction,
    TransactionPending,
    TransactionStatus,
    TransferRejected,
)
from .retry import RetryError, Sleep, retry_async


@dataclass(slots=True, frozen=True)
class PollPolicy:
    """Exponential lookup schedule bounded by attempts and wall-clock time."""

    initial_delay: float = 1.0
    max_delay: float = 10.0
    timeout: float = 60.0
    max_attempts: int = 10

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** (attempt - 1)), self.max_delay)


def _lookup_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransactionPending):
        return True
    return isinstance(exc, LedgerRequestError) and exc.retryable


async def await_finality(
    connection: LedgerConnection,
    tx_hash: str,
    policy: PollPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
) -> TransactionStatus:
    """Poll ``tx_hash`` until it appears in a validated ledger.

    Raises :class:`FinalityTimeout` when the attempts or the overall timeout
    run out first.
    """

    async def _check() -> TransactionStatus:
        status = await connection.lookup_transaction(tx_hash)
        if status is None or not status.validated:
            raise TransactionPending(tx_hash)
        return status

    try:
        return await asyncio.wait_for(
            retry_async(
                _check,
                max_attempts=policy.max_attempts,
                backoff=policy.delay,
                is_retryable=_lookup_retryable,
                sleep=sleep,
                description=f"finality check for {tx_hash}",
            ),
            timeout=policy.timeout,
        )
    except asyncio.TimeoutError as exc:
        raise FinalityTimeout(
            f"Transaction {tx_hash} not validated within {policy.timeout:g}s"
        ) from exc
    except RetryError as exc:
        raise FinalityTimeout(
            f"Transaction {tx_hash} not validated after {exc.attempts} checks"
        ) from exc


async def submit_and_confirm(
    connection: LedgerConnection,
    signed: SignedTransaction,
    policy: PollPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
) -> TransactionStatus:
    """Submit ``signed`` once and wait for a validated success.

    ``tel*`` results were not relayed and raise a retryable
    :class:`TransferRejected` straight away. Hard rejections raise a
    non-retryable one. Anything the network may still apply is confirmed
    through :func:`await_finality`.
    """

    result = await connection.submit(signed)
    code = result.engine_result
    logger.debug("Submitted {} with preliminary result {}", signed.tx_hash, code)

    queued = code == SUCCESS_CODE or code in ALREADY_SUBMITTED_CODES or code.startswith("ter")
    if not queued:
        raise TransferRejected(code, result.message)

    status = await await_finality(connection, signed.tx_hash, policy, sleep=sleep)
    if not status.succeeded:
        raise TransferRejected(status.result_code or "unknown")
    return status


def is_transient(exc: BaseException) -> bool:
    """True for failures where resubmitting the same signed blob may still succeed."""

    if isinstance(exc, FinalityTimeout):
        return True
    if isinstance(exc, TransferRejected):
        return exc.retryable
    if isinstance(exc, LedgerRequestError):
        return exc.retryable
    return False


__all__ = ["PollPolicy", "await_finality", "is_transient", "submit_and_confirm"]
